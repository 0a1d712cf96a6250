import pytest

from graph_notifications.core.errors import TranscriptNotReady, ValidationError
from graph_notifications.schemas.notification import GraphNotificationItem
from graph_notifications.services.gemini_summary_client import GeminiSummaryError
from graph_notifications.services.meeting_summary_pipeline import (
    MeetingReference,
    MeetingSummaryPipeline,
    parse_resource_reference,
)
from graph_notifications.services.meeting_store import InMemoryMeetingStore
from graph_notifications.services.runtime import PipelineRuntime

JOIN_URL = "https://teams.microsoft.com/l/meetup-join/19%3ameeting_abc%40thread.v2/0"


def _call_record_item(call_record_id: str = "call-1") -> GraphNotificationItem:
    return GraphNotificationItem.model_validate(
        {
            "subscriptionId": "sub-1",
            "changeType": "created",
            "resource": f"communications/callRecords/{call_record_id}",
            "resourceData": {"@odata.type": "#microsoft.graph.callRecord", "id": call_record_id},
            "clientState": "expected-client-state",
        },
    )


def test_parse_resource_reference_supports_each_resource_kind() -> None:
    assert parse_resource_reference("communications/callRecords/abc") == MeetingReference(
        kind="call_record",
        identifier="abc",
    )
    assert parse_resource_reference("communications/callRecords('abc')").identifier == "abc"
    assert parse_resource_reference("Users/user-1/Events/evt-1") == MeetingReference(
        kind="calendar_event",
        identifier="evt-1",
        user_id="user-1",
    )
    assert parse_resource_reference("me/events/evt-2").kind == "calendar_event"
    assert parse_resource_reference("communications/onlineMeetings/om-1") == MeetingReference(
        kind="online_meeting",
        identifier="om-1",
    )
    assert parse_resource_reference(
        "subscriptions/anything",
        {"@odata.type": "#microsoft.graph.callRecord", "id": "from-data"},
    ) == MeetingReference(kind="call_record", identifier="from-data")
    with pytest.raises(ValidationError):
        parse_resource_reference("chats/123")


def test_parse_resource_reference_falls_back_to_subscription_resource_type() -> None:
    assert parse_resource_reference("", {"id": "CR1"}, "call_records") == MeetingReference(
        kind="call_record",
        identifier="CR1",
    )
    assert parse_resource_reference("", {"id": "evt-9"}, "calendar_events").kind == "calendar_event"
    assert parse_resource_reference("communications/onlineMeetings", {"id": "om-9"}).kind == "online_meeting"
    with pytest.raises(ValidationError):
        parse_resource_reference("", {"id": "CR1"})


def test_call_record_notification_produces_transcript_and_summary(
    runtime: PipelineRuntime,
    fake_graph,
    fake_summary,
) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()

    result = runtime.dispatcher.dispatch(_call_record_item())

    record = runtime.notification_store.get_by_id(result.notification_id)
    assert record["processing_state"] == "done"
    meeting = runtime.meeting_store.get_meeting(record["meeting_id"])
    assert meeting["teams_id"] == JOIN_URL
    assert meeting["online_meeting_id"] == "online-1"
    assert meeting["organizer_user_id"] == "organizer-1"
    assert meeting["client_reference"] == "L2025001"
    assert meeting["calendar_type"] == "potential_client"
    transcript = runtime.meeting_store.get_transcript(meeting["id"])
    assert transcript["graph_transcript_id"] == "transcript-new"
    assert transcript["language"] == "en"
    assert transcript["content"].startswith("Dana Levi: Thanks for joining")
    assert transcript["raw_content"].startswith("WEBVTT")
    summary = runtime.meeting_store.get_latest_summary(meeting["id"])
    assert summary["transcript_id"] == transcript["id"]
    assert summary["questionnaire"]["ancestor_country"] == "Austria"
    assert summary["questionnaire_version"] == "1.0"
    assert fake_summary.calls[0]["language"] == "en"


def test_event_and_call_record_resolve_to_the_same_meeting(runtime: PipelineRuntime, fake_graph) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()
    fake_graph.events["evt-1"] = {
        "id": "evt-1",
        "subject": "Intake call [#L2025001]",
        "onlineMeeting": {"joinUrl": JOIN_URL},
    }

    from_event = runtime.dispatcher.dispatch(
        GraphNotificationItem.model_validate(
            {
                "subscriptionId": "sub-events",
                "changeType": "created",
                "resource": "Users/organizer-1/Events/evt-1",
                "clientState": "expected-client-state",
            },
        ),
    )
    from_call_record = runtime.dispatcher.dispatch(_call_record_item())

    first = runtime.notification_store.get_by_id(from_event.notification_id)
    second = runtime.notification_store.get_by_id(from_call_record.notification_id)
    assert first["meeting_id"] == second["meeting_id"]
    assert fake_graph.transcript_content_calls == 1


def test_failed_summary_save_resumes_without_refetching(
    monkeypatch: pytest.MonkeyPatch,
    runtime: PipelineRuntime,
    fake_graph,
    fake_summary,
) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()
    original_save_summary = runtime.meeting_store.save_summary
    failures = {"remaining": 1}

    def flaky_save_summary(record):  # type: ignore[no-untyped-def]
        if failures["remaining"]:
            failures["remaining"] -= 1
            raise RuntimeError("database unavailable")
        return original_save_summary(record)

    monkeypatch.setattr(runtime.meeting_store, "save_summary", flaky_save_summary)

    result = runtime.dispatcher.dispatch(_call_record_item())
    failed = runtime.notification_store.get_by_id(result.notification_id)
    assert failed["processing_state"] == "failed"
    assert failed["failure_reason"] == "PersistenceError"
    assert runtime.meeting_store.get_transcript(failed["meeting_id"]) is not None

    runtime.dispatcher.retry(result.notification_id)

    done = runtime.notification_store.get_by_id(result.notification_id)
    assert done["processing_state"] == "done"
    assert fake_graph.transcript_content_calls == 1
    assert len(fake_summary.calls) == 2
    assert runtime.meeting_store.get_latest_summary(done["meeting_id"]) is not None


def test_redelivery_after_window_reuses_transcript_and_summary(
    runtime: PipelineRuntime,
    fake_graph,
    fake_summary,
    clock,
) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()

    runtime.dispatcher.dispatch(_call_record_item())
    clock.advance(minutes=120)
    second = runtime.dispatcher.dispatch(_call_record_item())

    assert runtime.notification_store.get_by_id(second.notification_id)["processing_state"] == "done"
    assert fake_graph.transcript_content_calls == 1
    assert len(fake_summary.calls) == 1


def test_transcript_not_ready_after_retries(runtime: PipelineRuntime, fake_graph, sleep_calls) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()
    fake_graph.transcripts["online-1"] = []

    result = runtime.dispatcher.dispatch(_call_record_item())

    record = runtime.notification_store.get_by_id(result.notification_id)
    assert record["processing_state"] == "failed"
    assert record["failure_reason"] == "TranscriptNotReady"
    assert fake_graph.transcript_list_calls == 5
    assert sleep_calls == [30.0, 60.0, 120.0, 240.0]
    assert fake_graph.join_url_lookups == 1


def test_summarization_failure_keeps_transcript(runtime: PipelineRuntime, fake_graph, fake_summary) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()
    fake_summary.errors = [GeminiSummaryError("Gemini API HTTP 500: boom", status_code=500)]

    result = runtime.dispatcher.dispatch(_call_record_item())

    record = runtime.notification_store.get_by_id(result.notification_id)
    assert record["processing_state"] == "failed"
    assert record["failure_reason"] == "SummarizationError"
    assert runtime.meeting_store.get_transcript(record["meeting_id"]) is not None
    assert runtime.meeting_store.get_latest_summary(record["meeting_id"]) is None


def test_missing_summary_client_is_a_summarization_error(settings, fake_graph) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()
    pipeline = MeetingSummaryPipeline(settings, InMemoryMeetingStore(), graph_client=fake_graph, summary_client=None)

    outcome = pipeline.process_notification(
        {"id": "n-1", "resource": "communications/callRecords/call-1", "resource_data": {}},
    )

    assert outcome.succeeded is False
    assert outcome.failure_reason == "SummarizationError"
    assert outcome.transcript_id is not None


def test_unknown_resource_fails_as_validation_error(settings) -> None:  # type: ignore[no-untyped-def]
    pipeline = MeetingSummaryPipeline(settings, InMemoryMeetingStore())

    outcome = pipeline.process_notification({"id": "n-1", "resource": "chats/1", "resource_data": {}})

    assert outcome.succeeded is False
    assert outcome.failure_reason == "ValidationError"


def test_manual_request_with_transcript_text_skips_fetch(runtime: PipelineRuntime, fake_graph) -> None:  # type: ignore[no-untyped-def]
    result = runtime.pipeline.run_request(
        meeting_id="manual-meeting",
        client_id="client-7",
        auto_fetch_transcript=False,
        transcript_text="שלום, we discussed the application.",
    )

    assert result.meeting["teams_id"] == "manual-meeting"
    assert result.meeting["client_id"] == "client-7"
    assert result.meeting["calendar_type"] == "potential_client"
    assert result.transcript["source"] == "manual"
    assert result.transcript["language"] == "mixed"
    assert fake_graph.transcript_list_calls == 0


def test_manual_vtt_with_byte_order_mark_is_stored_without_it(runtime: PipelineRuntime) -> None:
    result = runtime.pipeline.run_request(
        meeting_id="bom-meeting",
        auto_fetch_transcript=False,
        transcript_text="\ufeffWEBVTT\n\n00:00:01.000 --> 00:00:02.000\n<v Dana>Hello</v>\n",
    )

    assert result.transcript["raw_content"].startswith("WEBVTT")
    assert result.transcript["content"] == "Dana: Hello"


def test_manual_request_keeps_existing_transcript(runtime: PipelineRuntime) -> None:
    first = runtime.pipeline.run_request(meeting_id="m-1", auto_fetch_transcript=False, transcript_text="First text")
    second = runtime.pipeline.run_request(meeting_id="m-1", auto_fetch_transcript=False, transcript_text="Other text")

    assert second.transcript["id"] == first.transcript["id"]
    assert second.transcript["content"] == "First text"
    assert second.summary["id"] == first.summary["id"]


def test_manual_request_by_call_record_fetches_once(runtime: PipelineRuntime, fake_graph, sleep_calls) -> None:  # type: ignore[no-untyped-def]
    fake_graph.add_meeting()
    fake_graph.transcripts["online-1"] = []

    with pytest.raises(TranscriptNotReady):
        runtime.pipeline.run_request(call_record_id="call-1")

    assert fake_graph.transcript_list_calls == 1
    assert sleep_calls == []


def test_regenerate_creates_new_summary_row(runtime: PipelineRuntime, fake_summary) -> None:  # type: ignore[no-untyped-def]
    first = runtime.pipeline.run_request(meeting_id="m-1", auto_fetch_transcript=False, transcript_text="Text")

    regenerated = runtime.pipeline.regenerate(first.meeting["id"])
    latest = runtime.pipeline.get_latest(first.meeting["id"])

    assert regenerated.summary["id"] != first.summary["id"]
    assert latest.summary["id"] == regenerated.summary["id"]
    assert len(fake_summary.calls) == 2
    assert runtime.pipeline.regenerate("missing") is None
