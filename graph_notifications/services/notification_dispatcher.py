import hashlib
import logging
import re
from collections import deque
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from threading import Condition
from typing import Any
from uuid import uuid4

from graph_notifications.core.config import Settings
from graph_notifications.core.errors import FailureReason, ValidationError
from graph_notifications.schemas.notification import GraphNotificationItem, ProcessingState
from graph_notifications.services.meeting_summary_pipeline import MeetingSummaryPipeline, PipelineOutcome
from graph_notifications.services.notification_store import NotificationStore, build_notification_document

logger = logging.getLogger(__name__)

_TRAILING_ID_PATTERN = re.compile(r"([^/'()]+)'?\)?/?$")


class DispatchStatus(StrEnum):
    accepted = "accepted"
    duplicate = "duplicate"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    notification_id: str
    dedup_key: str


@dataclass(frozen=True)
class ResourceLease:
    resource_id: str
    notification_id: str
    deadline: datetime


def resolve_resource_id(resource: str, resource_data: Mapping[str, Any] | None = None) -> str:
    data_id = resource_data.get("id") if resource_data else None
    if isinstance(data_id, str) and data_id.strip():
        return data_id.strip()
    cleaned = (resource or "").strip()
    match = _TRAILING_ID_PATTERN.search(cleaned)
    return match.group(1) if match else cleaned


def build_dedup_key(subscription_id: str, resource_id: str, change_type: str) -> str:
    raw_key = f"{subscription_id}|{resource_id}|{change_type.strip().lower()}"
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


class NotificationDispatcher:
    def __init__(
        self,
        settings: Settings,
        store: NotificationStore,
        pipeline: MeetingSummaryPipeline,
        executor: Executor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.pipeline = pipeline
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.notification_worker_count,
            thread_name_prefix="notification-worker",
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._condition = Condition()
        self._queues: dict[str, deque[str]] = {}
        self._draining: set[str] = set()
        self._leases: dict[str, ResourceLease] = {}
        self._outstanding = 0
        self._closed = False

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(minutes=self.settings.notification_dedup_window_minutes)

    @property
    def processing_deadline(self) -> timedelta:
        return timedelta(seconds=self.settings.notification_processing_deadline_seconds)

    def dispatch(self, item: GraphNotificationItem, *, resource_type: str | None = None) -> DispatchResult:
        with self._condition:
            if self._closed:
                raise RuntimeError("Notification dispatcher is shut down.")
        resource_id = resolve_resource_id(item.resource or "", item.resource_data)
        dedup_key = build_dedup_key(item.subscription_id, resource_id, item.change_type)
        notification_id = uuid4().hex
        received_at = self._clock()

        claimed = self.store.claim(
            dedup_key=dedup_key,
            notification_id=notification_id,
            claimed_at=received_at,
            window_start=received_at - self.dedup_window,
        )
        if not claimed:
            logger.info(
                "Duplicate notification discarded subscription_id=%s resource_id=%s change_type=%s",
                item.subscription_id,
                resource_id,
                item.change_type,
            )
            return DispatchResult(
                status=DispatchStatus.duplicate,
                notification_id=notification_id,
                dedup_key=dedup_key,
            )

        try:
            self.store.insert(
                build_notification_document(
                    notification_id=notification_id,
                    subscription_id=item.subscription_id,
                    change_type=item.change_type,
                    resource=item.resource,
                    resource_id=resource_id,
                    resource_data=item.resource_data,
                    dedup_key=dedup_key,
                    received_at=received_at,
                    resource_type=resource_type,
                ),
            )
            self.store.transition(
                notification_id,
                from_states=[ProcessingState.received],
                to_state=ProcessingState.queued,
            )
            self._enqueue(resource_id, notification_id)
        except Exception:
            # Redelivery must not be discarded as a duplicate of a notification that was never queued.
            self.store.release(dedup_key=dedup_key, notification_id=notification_id)
            raise
        logger.info(
            "Notification queued notification_id=%s subscription_id=%s resource_id=%s",
            notification_id,
            item.subscription_id,
            resource_id,
        )
        return DispatchResult(
            status=DispatchStatus.accepted,
            notification_id=notification_id,
            dedup_key=dedup_key,
        )

    def retry(self, notification_id: str) -> dict[str, Any] | None:
        record = self.store.get_by_id(notification_id)
        if record is None:
            return None
        if record.get("processing_state") != ProcessingState.failed:
            raise ValidationError(
                f"Notification {notification_id} is {record.get('processing_state')}; only failed notifications can be retried.",
            )

        now = self._clock()
        claimed = self.store.claim(
            dedup_key=record["dedup_key"],
            notification_id=notification_id,
            claimed_at=now,
            window_start=now - self.dedup_window,
        )
        if not claimed:
            raise ValidationError(f"Another delivery of notification {notification_id} is already in progress.")
        if not self.store.transition(
            notification_id,
            from_states=[ProcessingState.failed],
            to_state=ProcessingState.queued,
            updates={"failure_reason": None, "error": None},
        ):
            self.store.release(dedup_key=record["dedup_key"], notification_id=notification_id)
            raise ValidationError(f"Notification {notification_id} changed state before it could be retried.")

        self._enqueue(record["resource_id"], notification_id)
        logger.info("Notification re-queued notification_id=%s", notification_id)
        return self.store.get_by_id(notification_id)

    def expire_stale_leases(self) -> list[str]:
        now = self._clock()
        expired: list[ResourceLease] = []
        restart: list[str] = []
        with self._condition:
            for resource_id, lease in list(self._leases.items()):
                if lease.deadline > now:
                    continue
                del self._leases[resource_id]
                expired.append(lease)
                if self._queues.get(resource_id):
                    restart.append(resource_id)
                else:
                    self._draining.discard(resource_id)

        for lease in expired:
            record = self.store.get_by_id(lease.notification_id)
            reaped = self.store.transition(
                lease.notification_id,
                from_states=[ProcessingState.processing],
                to_state=ProcessingState.failed,
                updates={
                    "failure_reason": FailureReason.timeout.value,
                    "error": "Processing deadline exceeded.",
                },
            )
            if reaped and record:
                self.store.release(dedup_key=record["dedup_key"], notification_id=lease.notification_id)
                logger.warning(
                    "Processing lease expired notification_id=%s resource_id=%s deadline=%s",
                    lease.notification_id,
                    lease.resource_id,
                    lease.deadline.isoformat(),
                )

        for resource_id in restart:
            self._executor.submit(self._drain, resource_id)
        return [lease.notification_id for lease in expired]

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._condition:
            self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _enqueue(self, resource_id: str, notification_id: str) -> None:
        with self._condition:
            if self._closed:
                raise RuntimeError("Notification dispatcher is shut down.")
            self._queues.setdefault(resource_id, deque()).append(notification_id)
            self._outstanding += 1
            if resource_id in self._draining:
                return
            self._draining.add(resource_id)
        # Submitted outside the lock so inline executors can run the drain directly.
        self._executor.submit(self._drain, resource_id)

    def _drain(self, resource_id: str) -> None:
        while True:
            with self._condition:
                queue = self._queues.get(resource_id)
                if not queue:
                    self._queues.pop(resource_id, None)
                    self._draining.discard(resource_id)
                    self._condition.notify_all()
                    return
                notification_id = queue.popleft()
                lease = ResourceLease(
                    resource_id=resource_id,
                    notification_id=notification_id,
                    deadline=self._clock() + self.processing_deadline,
                )
                self._leases[resource_id] = lease

            try:
                self._process(lease)
            except Exception:
                logger.exception(
                    "Notification worker failed notification_id=%s resource_id=%s",
                    notification_id,
                    resource_id,
                )
            finally:
                with self._condition:
                    reaped = self._leases.get(resource_id) is not lease
                    if not reaped:
                        del self._leases[resource_id]
                    self._outstanding -= 1
                    self._condition.notify_all()
            if reaped:
                return

    def _process(self, lease: ResourceLease) -> None:
        notification_id = lease.notification_id
        record = self.store.get_by_id(notification_id)
        if record is None or record.get("processing_state") != ProcessingState.queued:
            logger.info("Skipping notification no longer queued notification_id=%s", notification_id)
            return
        started = self.store.transition(
            notification_id,
            from_states=[ProcessingState.queued],
            to_state=ProcessingState.processing,
            updates={"attempts": int(record.get("attempts") or 0) + 1},
        )
        if not started:
            return

        try:
            outcome = self.pipeline.process_notification(record)
        except Exception as exc:
            logger.exception("Unexpected pipeline failure notification_id=%s", notification_id)
            outcome = PipelineOutcome(
                succeeded=False,
                failure_reason=FailureReason.upstream_error,
                error=str(exc),
            )
        self._complete(record, outcome)

    def _complete(self, record: Mapping[str, Any], outcome: PipelineOutcome) -> None:
        notification_id = str(record["id"])
        if outcome.succeeded:
            completed = self.store.transition(
                notification_id,
                from_states=[ProcessingState.processing],
                to_state=ProcessingState.done,
                updates={"meeting_id": outcome.meeting_id, "failure_reason": None, "error": None},
            )
        else:
            completed = self.store.transition(
                notification_id,
                from_states=[ProcessingState.processing],
                to_state=ProcessingState.failed,
                updates={
                    "meeting_id": outcome.meeting_id,
                    "failure_reason": outcome.failure_reason.value if outcome.failure_reason else None,
                    "error": outcome.error,
                },
            )
            if completed:
                self.store.release(dedup_key=record["dedup_key"], notification_id=notification_id)

        if not completed:
            logger.warning(
                "Discarding late pipeline result notification_id=%s succeeded=%s",
                notification_id,
                outcome.succeeded,
            )
