from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from time import sleep
from typing import Any, TypeVar

from graph_notifications.core.config import Settings
from graph_notifications.core.errors import ConfigError, UpstreamError
from graph_notifications.schemas.subscription import (
    SubscriptionReconcileReport,
    SubscriptionResourceSpec,
    SubscriptionResourceType,
    SubscriptionStatus,
)
from graph_notifications.services.graph_api_client import GraphApiClient, parse_graph_datetime
from graph_notifications.services.subscription_store import SubscriptionStore, build_subscription_document

logger = logging.getLogger(__name__)

T = TypeVar("T")

AlertHook = Callable[[Mapping[str, Any], str], None]

_LIVE_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.expiring)


def infer_resource_type(resource: str) -> str | None:
    lowered = (resource or "").lower()
    if "callrecords" in lowered:
        return SubscriptionResourceType.call_records.value
    if "onlinemeetings" in lowered:
        return SubscriptionResourceType.online_meetings.value
    if "events" in lowered:
        return SubscriptionResourceType.calendar_events.value
    return None


class SubscriptionLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        store: SubscriptionStore,
        graph_client: GraphApiClient | None = None,
        alert_hook: AlertHook | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.graph_client = graph_client
        self.alert_hook = alert_hook
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def max_lifetime(self) -> timedelta:
        return timedelta(minutes=self.settings.subscription_max_lifetime_minutes)

    @property
    def renewal_tolerance(self) -> timedelta:
        return timedelta(minutes=self.settings.subscription_renewal_tolerance_minutes)

    @property
    def safety_window(self) -> timedelta:
        return timedelta(hours=self.settings.subscription_safety_window_hours)

    def create(self, resource_spec: SubscriptionResourceSpec) -> dict[str, Any]:
        notification_url = self.settings.graph_webhook_url
        client_state = self.settings.graph_client_state
        if not notification_url:
            raise ConfigError("GRAPH_WEBHOOK_URL is not configured.")
        if not client_state:
            raise ConfigError("GRAPH_CLIENT_STATE is not configured.")
        graph_client = self._require_graph_client()

        resource = resource_spec.resolved_resource()
        change_type = resource_spec.resolved_change_type()
        expiration_at = self._clock() + self.max_lifetime
        payload = self._with_backoff(
            lambda: graph_client.create_subscription(
                change_type=change_type,
                notification_url=notification_url,
                resource=resource,
                expiration_at=expiration_at,
                client_state=client_state,
            ),
            action="create",
        )
        record = self.store.upsert(
            build_subscription_document(
                subscription_id=str(payload["id"]),
                resource_type=resource_spec.resource_type.value,
                resource=str(payload.get("resource") or resource),
                change_type=str(payload.get("changeType") or change_type),
                client_state=client_state,
                notification_url=notification_url,
                expiration_at=parse_graph_datetime(payload.get("expirationDateTime")) or expiration_at,
                status=SubscriptionStatus.active.value,
            ),
        )
        logger.info(
            "Graph subscription created subscription_id=%s resource=%s expiration_at=%s",
            record["id"],
            record["resource"],
            record["expiration_at"],
        )
        return record

    def list(self) -> list[dict[str, Any]]:
        graph_client = self._require_graph_client()
        remote_items = self._with_backoff(graph_client.list_subscriptions, action="list")
        now = self._clock()
        remote_ids: set[str] = set()

        for remote in remote_items:
            subscription_id = str(remote.get("id") or "")
            if not subscription_id:
                continue
            remote_ids.add(subscription_id)
            existing = self.store.get_by_id(subscription_id) or {}
            resource = str(remote.get("resource") or existing.get("resource") or "")
            expiration_at = parse_graph_datetime(remote.get("expirationDateTime")) or parse_graph_datetime(
                existing.get("expiration_at"),
            )
            status = existing.get("status") or SubscriptionStatus.active.value
            if expiration_at and expiration_at <= now:
                status = SubscriptionStatus.expired.value
            elif status not in _LIVE_STATUSES:
                status = SubscriptionStatus.active.value
            self.store.upsert(
                {
                    "id": subscription_id,
                    "resource_type": existing.get("resource_type") or infer_resource_type(resource),
                    "resource": resource,
                    "change_type": str(remote.get("changeType") or existing.get("change_type") or ""),
                    "client_state": existing.get("client_state") or self.settings.graph_client_state,
                    "notification_url": remote.get("notificationUrl") or existing.get("notification_url"),
                    "expiration_at": expiration_at or now,
                    "status": status,
                },
            )

        for local in self.store.list_all():
            if local["id"] in remote_ids or local.get("status") in {
                SubscriptionStatus.deleted,
                SubscriptionStatus.expired,
            }:
                continue
            expiration_at = parse_graph_datetime(local.get("expiration_at"))
            status = (
                SubscriptionStatus.expired if expiration_at and expiration_at <= now else SubscriptionStatus.deleted
            )
            self.store.update(local["id"], {"status": status.value})
            logger.info(
                "Local subscription missing from Graph subscription_id=%s status=%s",
                local["id"],
                status.value,
            )

        return sorted(self.store.list_all(), key=self._expiration_sort_key)

    def status(self, subscription_id: str | None = None) -> dict[str, Any] | None:
        if subscription_id:
            record = self.store.get_by_id(subscription_id)
        else:
            candidates = [
                record
                for record in self.store.list_all()
                if record.get("status") != SubscriptionStatus.deleted
            ]
            record = min(candidates, key=self._expiration_sort_key) if candidates else None
        if record is None:
            return None
        return self._refresh(record)

    def renew(self, subscription_id: str) -> dict[str, Any] | None:
        record = self.store.get_by_id(subscription_id)
        if record is None:
            return None
        return self._renew_record(record)

    def delete(self, subscription_id: str) -> dict[str, Any] | None:
        record = self.store.get_by_id(subscription_id)
        if record is None:
            return None
        graph_client = self._require_graph_client()
        try:
            self._with_backoff(lambda: graph_client.delete_subscription(subscription_id), action="delete")
        except UpstreamError as exc:
            if exc.status_code != 404:
                raise
            logger.info("Graph subscription already gone subscription_id=%s", subscription_id)
        self.store.update(subscription_id, {"status": SubscriptionStatus.deleted.value})
        logger.info("Graph subscription deleted subscription_id=%s", subscription_id)
        return self.store.get_by_id(subscription_id)

    def reconcile_expiring(self) -> SubscriptionReconcileReport:
        now = self._clock()
        window_end = now + self.safety_window
        report = SubscriptionReconcileReport()

        for record in self.store.list_by_status([status.value for status in _LIVE_STATUSES]):
            subscription_id = record["id"]
            expiration_at = parse_graph_datetime(record.get("expiration_at"))
            if expiration_at is None or expiration_at <= now:
                self._mark_expired(record, "Subscription expired before it could be renewed.")
                report.failed.append(subscription_id)
                continue
            if expiration_at > window_end:
                report.skipped.append(subscription_id)
                continue

            self.store.update(subscription_id, {"status": SubscriptionStatus.expiring.value})
            try:
                self._renew_record(record)
            except (ConfigError, UpstreamError) as exc:
                self._mark_expired(record, f"Renewal failed: {exc}")
                report.failed.append(subscription_id)
                continue
            report.renewed.append(subscription_id)

        logger.info(
            "Subscription sweep finished renewed=%s failed=%s skipped=%s",
            len(report.renewed),
            len(report.failed),
            len(report.skipped),
        )
        return report

    def ensure_subscriptions(self) -> list[dict[str, Any]]:
        try:
            self.list()
        except UpstreamError as exc:
            logger.warning("Unable to refresh subscriptions from Graph error=%s", exc)

        now = self._clock()
        live_types = {
            record.get("resource_type")
            for record in self.store.list_by_status([status.value for status in _LIVE_STATUSES])
            if (parse_graph_datetime(record.get("expiration_at")) or now) > now
        }
        created: list[dict[str, Any]] = []
        for resource_type in self.settings.graph_default_resource_types:
            if resource_type in live_types:
                continue
            created.append(
                self.create(SubscriptionResourceSpec(resource_type=SubscriptionResourceType(resource_type))),
            )
        return created

    def _renew_record(self, record: Mapping[str, Any]) -> dict[str, Any]:
        subscription_id = str(record["id"])
        now = self._clock()
        target = now + self.max_lifetime
        current = parse_graph_datetime(record.get("expiration_at"))
        if current is not None and current >= target - self.renewal_tolerance:
            logger.info(
                "Subscription renewal skipped subscription_id=%s expiration_at=%s",
                subscription_id,
                current.isoformat(),
            )
            if record.get("status") != SubscriptionStatus.active:
                self.store.update(subscription_id, {"status": SubscriptionStatus.active.value})
            return self.store.get_by_id(subscription_id) or dict(record)

        graph_client = self._require_graph_client()
        payload = self._with_backoff(
            lambda: graph_client.renew_subscription(subscription_id, target),
            action="renew",
        )
        expiration_at = parse_graph_datetime(payload.get("expirationDateTime")) or target
        self.store.update(
            subscription_id,
            {
                "expiration_at": expiration_at,
                "status": SubscriptionStatus.active.value,
                "last_renewed_at": now,
                "last_error": None,
            },
        )
        logger.info(
            "Graph subscription renewed subscription_id=%s expiration_at=%s",
            subscription_id,
            expiration_at.isoformat(),
        )
        return self.store.get_by_id(subscription_id) or dict(record)

    def _refresh(self, record: Mapping[str, Any]) -> dict[str, Any]:
        subscription_id = str(record["id"])
        if record.get("status") == SubscriptionStatus.deleted or self.graph_client is None:
            return dict(record)
        try:
            remote = self.graph_client.get_subscription(subscription_id)
        except UpstreamError as exc:
            if exc.status_code != 404:
                raise
            now = self._clock()
            expiration_at = parse_graph_datetime(record.get("expiration_at"))
            status = (
                SubscriptionStatus.expired if expiration_at and expiration_at <= now else SubscriptionStatus.deleted
            )
            self.store.update(subscription_id, {"status": status.value})
            return self.store.get_by_id(subscription_id) or dict(record)

        expiration_at = parse_graph_datetime(remote.get("expirationDateTime"))
        if expiration_at:
            updates: dict[str, Any] = {"expiration_at": expiration_at}
            if expiration_at <= self._clock():
                updates["status"] = SubscriptionStatus.expired.value
            self.store.update(subscription_id, updates)
        return self.store.get_by_id(subscription_id) or dict(record)

    def _mark_expired(self, record: Mapping[str, Any], message: str) -> None:
        self.store.update(
            str(record["id"]),
            {"status": SubscriptionStatus.expired.value, "last_error": message},
        )
        self._alert(record, message)

    def _alert(self, record: Mapping[str, Any], message: str) -> None:
        logger.error(
            "Subscription alert subscription_id=%s resource=%s message=%s",
            record.get("id"),
            record.get("resource"),
            message,
        )
        if self.alert_hook is None:
            return
        try:
            self.alert_hook(record, message)
        except Exception:
            logger.exception("Subscription alert hook failed subscription_id=%s", record.get("id"))

    def _with_backoff(self, operation: Callable[[], T], *, action: str) -> T:
        max_attempts = self.settings.subscription_renewal_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return operation()
            except UpstreamError as exc:
                if not exc.transient or attempt >= max_attempts:
                    raise
                delay = self.settings.subscription_renewal_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Graph subscription %s failed attempt=%s/%s retry_in=%.1fs error=%s",
                    action,
                    attempt,
                    max_attempts,
                    delay,
                    exc,
                )
                sleep(delay)
        raise UpstreamError(f"Graph subscription {action} retries exhausted.")

    def _require_graph_client(self) -> GraphApiClient:
        if self.graph_client is None:
            raise ConfigError("GRAPH_ACCESS_TOKEN is not configured.")
        return self.graph_client

    def _expiration_sort_key(self, record: Mapping[str, Any]) -> datetime:
        return parse_graph_datetime(record.get("expiration_at")) or datetime.max.replace(tzinfo=UTC)
