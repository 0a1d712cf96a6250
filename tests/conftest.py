from collections.abc import Iterator
from concurrent.futures import Executor, Future
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient

from graph_notifications.core.config import Settings, get_settings
from graph_notifications.main import app
from graph_notifications.services.gemini_summary_client import MeetingSummaryDraft
from graph_notifications.services.graph_api_client import GraphApiError, format_graph_datetime
from graph_notifications.services.meeting_store import clear_meeting_store_cache
from graph_notifications.services.notification_store import clear_notification_store_cache
from graph_notifications.services.runtime import PipelineRuntime, build_runtime
from graph_notifications.services.subscription_store import clear_subscription_store_cache

CLIENT_STATE = "expected-client-state"
WEBHOOK_URL = "https://hooks.example.com/api/webhooks/graph"
JOIN_URL = "https://teams.microsoft.com/l/meetup-join/19%3ameeting_abc%40thread.v2/0"

SAMPLE_VTT = """WEBVTT

00:00:01.000 --> 00:00:04.000
<v Dana Levi>Thanks for joining, let's review the citizenship application.</v>

00:00:05.000 --> 00:00:09.000
<v Client>My grandfather was born in Vienna in 1920.</v>
"""


class InlineExecutor(Executor):
    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn, /, *args, **kwargs):  # type: ignore[no-untyped-def]
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGraphClient:
    def __init__(self) -> None:
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.create_calls: list[dict[str, Any]] = []
        self.renew_calls: list[tuple[str, datetime]] = []
        self.renew_errors: list[Exception] = []
        self.create_errors: list[Exception] = []
        self.deleted: list[str] = []
        self.call_records: dict[str, dict[str, Any]] = {}
        self.events: dict[str, dict[str, Any]] = {}
        self.online_meetings: dict[str, dict[str, Any]] = {}
        self.transcripts: dict[str, list[dict[str, Any]]] = {}
        self.transcript_contents: dict[tuple[str, str], str] = {}
        self.transcript_list_calls = 0
        self.transcript_content_calls = 0
        self.join_url_lookups = 0

    def add_meeting(
        self,
        *,
        call_record_id: str = "call-1",
        online_meeting_id: str = "online-1",
        join_url: str = JOIN_URL,
        subject: str = "Intake call [#L2025001]",
        content: str = SAMPLE_VTT,
        organizer_id: str = "organizer-1",
    ) -> None:
        self.call_records[call_record_id] = {
            "id": call_record_id,
            "joinWebUrl": join_url,
            "organizer": {"user": {"id": organizer_id, "displayName": "Dana Levi"}},
        }
        self.online_meetings[online_meeting_id] = {
            "id": online_meeting_id,
            "joinWebUrl": join_url,
            "subject": subject,
        }
        self.transcripts[online_meeting_id] = [
            {"id": "transcript-old", "createdDateTime": "2026-01-10T09:00:00.0000000Z"},
            {"id": "transcript-new", "createdDateTime": "2026-01-10T10:00:00.0000000Z"},
        ]
        self.transcript_contents[(online_meeting_id, "transcript-new")] = content
        self.transcript_contents[(online_meeting_id, "transcript-old")] = "WEBVTT\n\nstale"

    def create_subscription(
        self,
        *,
        change_type: str,
        notification_url: str,
        resource: str,
        expiration_at: datetime,
        client_state: str,
    ) -> dict[str, Any]:
        self.create_calls.append(
            {
                "change_type": change_type,
                "notification_url": notification_url,
                "resource": resource,
                "expiration_at": expiration_at,
                "client_state": client_state,
            },
        )
        if self.create_errors:
            raise self.create_errors.pop(0)
        subscription_id = f"sub-{len(self.create_calls)}"
        payload = {
            "id": subscription_id,
            "resource": resource,
            "changeType": change_type,
            "notificationUrl": notification_url,
            "expirationDateTime": format_graph_datetime(expiration_at),
        }
        self.subscriptions[subscription_id] = payload
        return payload

    def list_subscriptions(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self.subscriptions.values()]

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        if subscription_id not in self.subscriptions:
            raise GraphApiError("Graph API HTTP 404: not found", status_code=404)
        return dict(self.subscriptions[subscription_id])

    def renew_subscription(self, subscription_id: str, expiration_at: datetime) -> dict[str, Any]:
        self.renew_calls.append((subscription_id, expiration_at))
        if self.renew_errors:
            raise self.renew_errors.pop(0)
        payload = self.subscriptions.setdefault(subscription_id, {"id": subscription_id})
        payload["expirationDateTime"] = format_graph_datetime(expiration_at)
        return dict(payload)

    def delete_subscription(self, subscription_id: str) -> None:
        self.deleted.append(subscription_id)
        if self.subscriptions.pop(subscription_id, None) is None:
            raise GraphApiError("Graph API HTTP 404: not found", status_code=404)

    def get_call_record(self, call_record_id: str) -> dict[str, Any]:
        if call_record_id not in self.call_records:
            raise GraphApiError("Graph API HTTP 404: not found", status_code=404)
        return dict(self.call_records[call_record_id])

    def get_event(self, event_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        if event_id not in self.events:
            raise GraphApiError("Graph API HTTP 404: not found", status_code=404)
        return dict(self.events[event_id])

    def get_online_meeting(self, online_meeting_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        if online_meeting_id not in self.online_meetings:
            raise GraphApiError("Graph API HTTP 404: not found", status_code=404)
        return dict(self.online_meetings[online_meeting_id])

    def find_online_meeting_by_join_url(
        self,
        join_web_url: str,
        *,
        user_id: str | None = None,
    ) -> dict[str, Any] | None:
        self.join_url_lookups += 1
        for online_meeting in self.online_meetings.values():
            if online_meeting.get("joinWebUrl") == join_web_url:
                return dict(online_meeting)
        return None

    def list_meeting_transcripts(
        self,
        online_meeting_id: str,
        *,
        user_id: str | None = None,
    ) -> list[dict[str, Any]]:
        self.transcript_list_calls += 1
        return [dict(item) for item in self.transcripts.get(online_meeting_id, [])]

    def get_transcript_content(
        self,
        online_meeting_id: str,
        transcript_id: str,
        *,
        user_id: str | None = None,
    ) -> str:
        self.transcript_content_calls += 1
        return self.transcript_contents[(online_meeting_id, transcript_id)]


class FakeSummaryClient:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.errors: list[Exception] = []

    def summarize(
        self,
        *,
        meeting_id: str | None,
        transcript_text: str,
        language: str,
        subject: str | None = None,
    ) -> MeetingSummaryDraft:
        self.calls.append(
            {
                "meeting_id": meeting_id,
                "transcript_text": transcript_text,
                "language": language,
                "subject": subject,
            },
        )
        if self.errors:
            raise self.errors.pop(0)
        return MeetingSummaryDraft(
            summary_text=f"Summary #{len(self.calls)}",
            summary_en=f"Summary #{len(self.calls)}",
            summary_he=None,
            action_items=[{"owner": "Dana Levi", "task": "Request birth certificate", "due_date": None}],
            risks=["Missing archival records"],
            questionnaire={"meeting_type": "intake", "ancestor_country": "Austria"},
            model="fake-gemini",
        )


def _clear_caches() -> None:
    get_settings.cache_clear()
    clear_subscription_store_cache()
    clear_notification_store_cache()
    clear_meeting_store_cache()


@pytest.fixture(autouse=True)
def isolated_environment() -> Iterator[None]:
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv("PERSISTENCE_STORE", "memory")
    monkeypatch.setenv("GRAPH_ACCESS_TOKEN", "")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.setenv("GRAPH_CLIENT_STATE", CLIENT_STATE)
    monkeypatch.setenv("GRAPH_WEBHOOK_URL", WEBHOOK_URL)
    monkeypatch.setenv("GRAPH_DEFAULT_RESOURCE_TYPES", "call_records")
    monkeypatch.setenv("SUBSCRIPTION_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("SUBSCRIPTION_ENSURE_ON_STARTUP", "false")
    _clear_caches()
    yield
    monkeypatch.undo()
    _clear_caches()


@pytest.fixture
def sleep_calls(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    calls: list[float] = []
    monkeypatch.setattr("graph_notifications.services.meeting_summary_pipeline.sleep", calls.append)
    monkeypatch.setattr("graph_notifications.services.subscription_service.sleep", calls.append)
    return calls


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


@pytest.fixture
def fake_graph() -> FakeGraphClient:
    return FakeGraphClient()


@pytest.fixture
def fake_summary() -> FakeSummaryClient:
    return FakeSummaryClient()


@pytest.fixture
def executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def runtime(
    settings: Settings,
    fake_graph: FakeGraphClient,
    fake_summary: FakeSummaryClient,
    executor: InlineExecutor,
    clock: FakeClock,
    sleep_calls: list[float],
) -> PipelineRuntime:
    return build_runtime(
        settings,
        graph_client=fake_graph,  # type: ignore[arg-type]
        summary_client=fake_summary,  # type: ignore[arg-type]
        executor=executor,
        clock=clock,
    )


@pytest.fixture
def api_client(runtime: PipelineRuntime) -> Iterator[TestClient]:
    app.state.runtime = runtime
    yield TestClient(app)
    app.state.runtime = None
