from datetime import timedelta

import pytest

from graph_notifications.core.errors import ConfigError
from graph_notifications.schemas.subscription import SubscriptionResourceSpec, SubscriptionResourceType
from graph_notifications.services.graph_api_client import GraphApiError, format_graph_datetime
from graph_notifications.services.runtime import PipelineRuntime
from graph_notifications.services.subscription_service import SubscriptionLifecycleManager, infer_resource_type
from graph_notifications.services.subscription_store import build_subscription_document


def _seed_subscription(runtime: PipelineRuntime, subscription_id: str, expires_in: timedelta, clock) -> None:  # type: ignore[no-untyped-def]
    expiration_at = clock() + expires_in
    runtime.subscription_store.upsert(
        build_subscription_document(
            subscription_id=subscription_id,
            resource_type="call_records",
            resource="communications/callRecords",
            change_type="created",
            client_state="expected-client-state",
            notification_url="https://hooks.example.com/api/webhooks/graph",
            expiration_at=expiration_at,
            status="active",
        ),
    )
    runtime.lifecycle_manager.graph_client.subscriptions[subscription_id] = {  # type: ignore[union-attr]
        "id": subscription_id,
        "resource": "communications/callRecords",
        "expirationDateTime": format_graph_datetime(expiration_at),
    }


def test_create_requires_webhook_url(monkeypatch: pytest.MonkeyPatch, runtime: PipelineRuntime, fake_graph) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(runtime.settings, "graph_webhook_url", "")

    with pytest.raises(ConfigError, match="GRAPH_WEBHOOK_URL"):
        runtime.lifecycle_manager.create(
            SubscriptionResourceSpec(resource_type=SubscriptionResourceType.call_records),
        )

    assert fake_graph.create_calls == []


def test_create_requires_graph_client(settings, clock) -> None:  # type: ignore[no-untyped-def]
    from graph_notifications.services.subscription_store import InMemorySubscriptionStore

    manager = SubscriptionLifecycleManager(settings, InMemorySubscriptionStore(), graph_client=None, clock=clock)

    with pytest.raises(ConfigError, match="GRAPH_ACCESS_TOKEN"):
        manager.create(SubscriptionResourceSpec(resource_type=SubscriptionResourceType.calendar_events))


def test_create_registers_subscription_with_defaults(runtime: PipelineRuntime, fake_graph, clock) -> None:  # type: ignore[no-untyped-def]
    record = runtime.lifecycle_manager.create(
        SubscriptionResourceSpec(resource_type=SubscriptionResourceType.calendar_events),
    )

    assert fake_graph.create_calls[0]["resource"] == "me/events"
    assert fake_graph.create_calls[0]["change_type"] == "created,updated"
    assert fake_graph.create_calls[0]["client_state"] == "expected-client-state"
    assert record["status"] == "active"
    assert record["client_state"] == "expected-client-state"
    assert record["expiration_at"] == (clock() + timedelta(minutes=4230)).replace(microsecond=0)
    assert runtime.subscription_store.get_by_id(record["id"]) is not None


def test_create_retries_transient_errors_with_backoff(runtime: PipelineRuntime, fake_graph, sleep_calls) -> None:  # type: ignore[no-untyped-def]
    fake_graph.create_errors = [
        GraphApiError("Graph API HTTP 503: busy", status_code=503),
        GraphApiError("Graph API HTTP 429: throttled", status_code=429),
    ]

    record = runtime.lifecycle_manager.create(
        SubscriptionResourceSpec(resource_type=SubscriptionResourceType.call_records),
    )

    assert record["id"] == "sub-3"
    assert sleep_calls == [2.0, 4.0]


def test_create_does_not_retry_rejections(runtime: PipelineRuntime, fake_graph, sleep_calls) -> None:  # type: ignore[no-untyped-def]
    fake_graph.create_errors = [GraphApiError("Graph API HTTP 400: invalid resource", status_code=400)]

    with pytest.raises(GraphApiError):
        runtime.lifecycle_manager.create(
            SubscriptionResourceSpec(resource_type=SubscriptionResourceType.call_records),
        )

    assert len(fake_graph.create_calls) == 1
    assert sleep_calls == []


def test_renew_is_idempotent_within_tolerance(runtime: PipelineRuntime, fake_graph, clock) -> None:  # type: ignore[no-untyped-def]
    _seed_subscription(runtime, "sub-1", timedelta(hours=10), clock)

    first = runtime.lifecycle_manager.renew("sub-1")
    second = runtime.lifecycle_manager.renew("sub-1")

    assert len(fake_graph.renew_calls) == 1
    assert first["expiration_at"] == second["expiration_at"]
    assert second["status"] == "active"
    assert second["last_renewed_at"] == clock()


def test_renew_unknown_subscription_returns_none(runtime: PipelineRuntime) -> None:
    assert runtime.lifecycle_manager.renew("missing") is None


def test_sweep_renews_inside_window_and_skips_outside(runtime: PipelineRuntime, fake_graph, clock) -> None:  # type: ignore[no-untyped-def]
    _seed_subscription(runtime, "sub-soon", timedelta(hours=12), clock)
    _seed_subscription(runtime, "sub-later", timedelta(hours=48), clock)

    report = runtime.lifecycle_manager.reconcile_expiring()

    assert report.renewed == ["sub-soon"]
    assert report.skipped == ["sub-later"]
    assert report.failed == []
    assert [call[0] for call in fake_graph.renew_calls] == ["sub-soon"]
    renewed = runtime.subscription_store.get_by_id("sub-soon")
    assert renewed["status"] == "active"
    assert renewed["expiration_at"] > clock() + timedelta(hours=48)


def test_sweep_marks_expired_and_alerts_after_retries(settings, fake_graph, clock, sleep_calls) -> None:  # type: ignore[no-untyped-def]
    from graph_notifications.services.subscription_store import InMemorySubscriptionStore

    alerts: list[tuple[str, str]] = []
    manager = SubscriptionLifecycleManager(
        settings,
        InMemorySubscriptionStore(),
        graph_client=fake_graph,
        alert_hook=lambda record, message: alerts.append((record["id"], message)),
        clock=clock,
    )
    manager.store.upsert(
        build_subscription_document(
            subscription_id="sub-1",
            resource_type="call_records",
            resource="communications/callRecords",
            change_type="created",
            client_state="expected-client-state",
            notification_url=None,
            expiration_at=clock() + timedelta(hours=2),
            status="active",
        ),
    )
    fake_graph.renew_errors = [GraphApiError("Graph API HTTP 503: busy", status_code=503) for _ in range(4)]

    report = manager.reconcile_expiring()

    assert report.failed == ["sub-1"]
    assert len(fake_graph.renew_calls) == 4
    assert sleep_calls == [2.0, 4.0, 8.0]
    stored = manager.store.get_by_id("sub-1")
    assert stored["status"] == "expired"
    assert "HTTP 503" in stored["last_error"]
    assert alerts and alerts[0][0] == "sub-1"


def test_sweep_treats_client_errors_as_terminal(runtime: PipelineRuntime, fake_graph, clock, sleep_calls) -> None:  # type: ignore[no-untyped-def]
    _seed_subscription(runtime, "sub-1", timedelta(hours=3), clock)
    fake_graph.renew_errors = [GraphApiError("Graph API HTTP 404: subscription not found", status_code=404)]

    report = runtime.lifecycle_manager.reconcile_expiring()

    assert report.failed == ["sub-1"]
    assert len(fake_graph.renew_calls) == 1
    assert sleep_calls == []
    assert runtime.subscription_store.get_by_id("sub-1")["status"] == "expired"


def test_sweep_marks_already_expired_subscriptions(runtime: PipelineRuntime, fake_graph, clock, caplog) -> None:  # type: ignore[no-untyped-def]
    _seed_subscription(runtime, "sub-old", timedelta(hours=-1), clock)

    with caplog.at_level("ERROR"):
        report = runtime.lifecycle_manager.reconcile_expiring()

    assert report.failed == ["sub-old"]
    assert fake_graph.renew_calls == []
    assert runtime.subscription_store.get_by_id("sub-old")["status"] == "expired"
    assert "Subscription alert subscription_id=sub-old" in caplog.text


def test_list_reconciles_local_cache_with_graph(runtime: PipelineRuntime, fake_graph, clock) -> None:  # type: ignore[no-untyped-def]
    _seed_subscription(runtime, "sub-kept", timedelta(hours=30), clock)
    _seed_subscription(runtime, "sub-gone", timedelta(hours=30), clock)
    _seed_subscription(runtime, "sub-lapsed", timedelta(hours=-2), clock)
    fake_graph.subscriptions.pop("sub-gone")
    fake_graph.subscriptions.pop("sub-lapsed")
    fake_graph.subscriptions["sub-remote"] = {
        "id": "sub-remote",
        "resource": "me/events",
        "changeType": "created,updated",
        "expirationDateTime": format_graph_datetime(clock() + timedelta(hours=40)),
    }

    records = {record["id"]: record for record in runtime.lifecycle_manager.list()}

    assert records["sub-kept"]["status"] == "active"
    assert records["sub-kept"]["client_state"] == "expected-client-state"
    assert records["sub-gone"]["status"] == "deleted"
    assert records["sub-lapsed"]["status"] == "expired"
    assert records["sub-remote"]["resource_type"] == "calendar_events"


def test_status_without_id_returns_soonest_expiring(runtime: PipelineRuntime, clock) -> None:  # type: ignore[no-untyped-def]
    _seed_subscription(runtime, "sub-late", timedelta(hours=50), clock)
    _seed_subscription(runtime, "sub-early", timedelta(hours=5), clock)

    record = runtime.lifecycle_manager.status()

    assert record["id"] == "sub-early"


def test_delete_tolerates_missing_remote_subscription(runtime: PipelineRuntime, fake_graph, clock) -> None:  # type: ignore[no-untyped-def]
    _seed_subscription(runtime, "sub-1", timedelta(hours=5), clock)
    fake_graph.subscriptions.pop("sub-1")

    record = runtime.lifecycle_manager.delete("sub-1")

    assert record["status"] == "deleted"
    assert fake_graph.deleted == ["sub-1"]


def test_ensure_subscriptions_creates_missing_default_types(runtime: PipelineRuntime, fake_graph) -> None:  # type: ignore[no-untyped-def]
    created = runtime.lifecycle_manager.ensure_subscriptions()
    again = runtime.lifecycle_manager.ensure_subscriptions()

    assert [record["resource_type"] for record in created] == ["call_records"]
    assert again == []
    assert len(fake_graph.create_calls) == 1


def test_infer_resource_type() -> None:
    assert infer_resource_type("communications/callRecords") == "call_records"
    assert infer_resource_type("communications/onlineMeetings") == "online_meetings"
    assert infer_resource_type("users/abc/events") == "calendar_events"
    assert infer_resource_type("chats") is None
