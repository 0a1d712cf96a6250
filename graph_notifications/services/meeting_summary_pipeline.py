import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from time import sleep
from typing import Any, TypeVar

from graph_notifications.core.config import Settings
from graph_notifications.core.errors import (
    ConfigError,
    FailureReason,
    PersistenceError,
    PipelineError,
    SummarizationError,
    TranscriptNotReady,
    UpstreamError,
    ValidationError,
)
from graph_notifications.services.gemini_summary_client import GeminiSummaryClient
from graph_notifications.services.graph_api_client import GraphApiClient, parse_graph_datetime
from graph_notifications.services.meeting_store import (
    MeetingStore,
    build_summary_document,
    build_transcript_document,
)
from graph_notifications.services.subscription_service import infer_resource_type
from graph_notifications.services.transcript_text import (
    detect_language,
    extract_client_reference,
    looks_like_vtt,
    normalize_transcript_content,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

_RESOURCE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("call_record", re.compile(r"communications/callRecords(?:\('|/)([^/'()]+)", re.IGNORECASE)),
    (
        "online_meeting",
        re.compile(
            r"(?:users(?:\('|/)(?P<user>[^/'()]+)'?\)?/)?(?:communications/)?onlineMeetings(?:\('|/)(?P<id>[^/'()]+)",
            re.IGNORECASE,
        ),
    ),
    (
        "calendar_event",
        re.compile(
            r"(?:users(?:\('|/)(?P<user>[^/'()]+)'?\)?|me)/events(?:\('|/)(?P<id>[^/'()]+)",
            re.IGNORECASE,
        ),
    ),
)

_SUBSCRIPTION_KINDS = {
    "call_records": "call_record",
    "online_meetings": "online_meeting",
    "calendar_events": "calendar_event",
}


@dataclass(frozen=True)
class MeetingReference:
    kind: str
    identifier: str
    user_id: str | None = None


@dataclass(frozen=True)
class PipelineOutcome:
    succeeded: bool
    meeting_id: str | None = None
    transcript_id: str | None = None
    summary_id: str | None = None
    failure_reason: FailureReason | None = None
    error: str | None = None


@dataclass(frozen=True)
class MeetingSummaryResult:
    meeting: dict[str, Any]
    transcript: dict[str, Any]
    summary: dict[str, Any]


def parse_resource_reference(
    resource: str,
    resource_data: Mapping[str, Any] | None = None,
    resource_type: str | None = None,
) -> MeetingReference:
    cleaned = (resource or "").strip().strip("/")
    for kind, pattern in _RESOURCE_PATTERNS:
        match = pattern.search(cleaned)
        if not match:
            continue
        groups = match.groupdict()
        identifier = groups.get("id") or match.group(1)
        return MeetingReference(kind=kind, identifier=identifier, user_id=groups.get("user"))

    data_id = resource_data.get("id") if resource_data else None
    odata_type = str(resource_data.get("@odata.type", "")) if resource_data else ""
    if isinstance(data_id, str) and data_id.strip():
        lowered_type = odata_type.lower()
        if "callrecord" in lowered_type:
            return MeetingReference(kind="call_record", identifier=data_id.strip())
        if "onlinemeeting" in lowered_type:
            return MeetingReference(kind="online_meeting", identifier=data_id.strip())
        if "event" in lowered_type:
            return MeetingReference(kind="calendar_event", identifier=data_id.strip())
        # Bare resourceData falls back to the kind the subscription was created for.
        kind = _SUBSCRIPTION_KINDS.get(resource_type or infer_resource_type(cleaned) or "")
        if kind:
            return MeetingReference(kind=kind, identifier=data_id.strip())
    raise ValidationError(f"Unsupported notification resource: {resource!r}")


class MeetingSummaryPipeline:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore,
        graph_client: GraphApiClient | None = None,
        summary_client: GeminiSummaryClient | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store
        self.graph_client = graph_client
        self.summary_client = summary_client

    def process_notification(self, record: Mapping[str, Any]) -> PipelineOutcome:
        meeting_id: str | None = None
        transcript_id: str | None = None
        try:
            reference = parse_resource_reference(
                str(record.get("resource") or ""),
                record.get("resource_data"),
                record.get("resource_type"),
            )
            meeting = self._resolve_meeting(reference)
            meeting_id = meeting["id"]
            transcript = self._ensure_transcript(meeting)
            transcript_id = transcript["id"]
            summary = self._get_or_create_summary(meeting, transcript)
        except PipelineError as exc:
            logger.warning(
                "Notification pipeline failed notification_id=%s meeting_id=%s reason=%s error=%s",
                record.get("id"),
                meeting_id,
                exc.reason.value,
                exc,
            )
            return PipelineOutcome(
                succeeded=False,
                meeting_id=meeting_id,
                transcript_id=transcript_id,
                failure_reason=exc.reason,
                error=str(exc),
            )

        logger.info(
            "Notification pipeline completed notification_id=%s meeting_id=%s transcript_id=%s summary_id=%s",
            record.get("id"),
            meeting_id,
            transcript_id,
            summary["id"],
        )
        return PipelineOutcome(
            succeeded=True,
            meeting_id=meeting_id,
            transcript_id=transcript_id,
            summary_id=summary["id"],
        )

    def run_request(
        self,
        *,
        meeting_id: str | None = None,
        call_record_id: str | None = None,
        client_id: str | None = None,
        auto_fetch_transcript: bool = True,
        transcript_text: str | None = None,
    ) -> MeetingSummaryResult:
        if call_record_id:
            reference = MeetingReference(kind="call_record", identifier=call_record_id.strip())
        elif meeting_id:
            reference = MeetingReference(kind="meeting", identifier=meeting_id.strip())
        else:
            raise ValidationError("Either meeting_id or call_record_id is required.")

        meeting = self._resolve_meeting(reference, client_id=client_id)
        transcript = self._ensure_transcript(
            meeting,
            transcript_text=transcript_text,
            allow_fetch=auto_fetch_transcript,
            fetch_attempts=1,
        )
        summary = self._get_or_create_summary(meeting, transcript)
        return MeetingSummaryResult(
            meeting=self.meeting_store.get_meeting(meeting["id"]) or meeting,
            transcript=transcript,
            summary=summary,
        )

    def regenerate(self, meeting_id: str) -> MeetingSummaryResult | None:
        meeting = self.meeting_store.get_meeting(meeting_id)
        if not meeting:
            return None
        transcript = self.meeting_store.get_transcript(meeting["id"])
        if not transcript:
            raise TranscriptNotReady(f"No transcript stored for meeting {meeting_id}.")
        summary = self._create_summary(meeting, transcript)
        return MeetingSummaryResult(meeting=meeting, transcript=transcript, summary=summary)

    def get_latest(self, meeting_id: str) -> MeetingSummaryResult | None:
        meeting = self.meeting_store.get_meeting(meeting_id)
        if not meeting:
            return None
        transcript = self.meeting_store.get_transcript(meeting["id"])
        summary = self.meeting_store.get_latest_summary(meeting["id"])
        if not transcript or not summary:
            return None
        return MeetingSummaryResult(meeting=meeting, transcript=transcript, summary=summary)

    def _resolve_meeting(
        self,
        reference: MeetingReference,
        *,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        if reference.kind == "meeting":
            existing = self.meeting_store.get_meeting(reference.identifier)
            if existing:
                return self._attach_client(existing, client_id)
            teams_id, defaults = self._describe_manual_meeting(reference)
        elif reference.kind == "call_record":
            teams_id, defaults = self._describe_call_record(reference)
        elif reference.kind == "online_meeting":
            teams_id, defaults = self._describe_online_meeting(reference)
        elif reference.kind == "calendar_event":
            teams_id, defaults = self._describe_calendar_event(reference)
        else:
            raise ValidationError(f"Unsupported meeting reference kind: {reference.kind}")

        client_reference = extract_client_reference(defaults.get("subject"))
        defaults["client_reference"] = client_reference
        defaults["client_id"] = client_id
        defaults["calendar_type"] = "potential_client" if client_reference or client_id else "staff"
        meeting = self._call_store(
            lambda: self.meeting_store.get_or_create_meeting(teams_id, defaults),
            "resolve meeting",
        )
        return self._attach_client(meeting, client_id)

    def _attach_client(self, meeting: dict[str, Any], client_id: str | None) -> dict[str, Any]:
        if not client_id or meeting.get("client_id") == client_id:
            return meeting
        updates = {"client_id": client_id, "calendar_type": "potential_client"}
        self._call_store(
            lambda: self.meeting_store.update_meeting(meeting["id"], updates),
            "update meeting",
        )
        return {**meeting, **updates}

    def _describe_call_record(self, reference: MeetingReference) -> tuple[str, dict[str, Any]]:
        graph_client = self._require_graph_client()
        call_record = self._with_upstream_retry(lambda: graph_client.get_call_record(reference.identifier))
        join_web_url = self._to_text(call_record.get("joinWebUrl"))
        organizer = call_record.get("organizer")
        organizer_user_id = None
        if isinstance(organizer, Mapping) and isinstance(organizer.get("user"), Mapping):
            organizer_user_id = self._to_text(organizer["user"].get("id"))
        return join_web_url or f"callRecord:{reference.identifier}", {
            "subject": None,
            "join_web_url": join_web_url,
            "organizer_user_id": organizer_user_id,
            "call_record_id": reference.identifier,
            "online_meeting_id": None,
        }

    def _describe_online_meeting(self, reference: MeetingReference) -> tuple[str, dict[str, Any]]:
        graph_client = self._require_graph_client()
        user_id = reference.user_id or self.settings.graph_default_user_id or None
        online_meeting = self._with_upstream_retry(
            lambda: graph_client.get_online_meeting(reference.identifier, user_id=user_id),
        )
        join_web_url = self._to_text(online_meeting.get("joinWebUrl"))
        return join_web_url or f"onlineMeeting:{reference.identifier}", {
            "subject": self._to_text(online_meeting.get("subject")),
            "join_web_url": join_web_url,
            "organizer_user_id": user_id,
            "call_record_id": None,
            "online_meeting_id": reference.identifier,
        }

    def _describe_calendar_event(self, reference: MeetingReference) -> tuple[str, dict[str, Any]]:
        graph_client = self._require_graph_client()
        user_id = reference.user_id or self.settings.graph_default_user_id or None
        event = self._with_upstream_retry(
            lambda: graph_client.get_event(reference.identifier, user_id=user_id),
        )
        join_web_url = None
        online_meeting = event.get("onlineMeeting")
        if isinstance(online_meeting, Mapping):
            join_web_url = self._to_text(online_meeting.get("joinUrl"))
        return join_web_url or f"event:{reference.identifier}", {
            "subject": self._to_text(event.get("subject")),
            "join_web_url": join_web_url,
            "organizer_user_id": user_id,
            "call_record_id": None,
            "online_meeting_id": None,
            "event_id": reference.identifier,
        }

    def _describe_manual_meeting(self, reference: MeetingReference) -> tuple[str, dict[str, Any]]:
        if self.graph_client is not None:
            try:
                return self._describe_online_meeting(
                    MeetingReference(kind="online_meeting", identifier=reference.identifier),
                )
            except UpstreamError as exc:
                if exc.status_code != 404:
                    raise
                logger.info("Meeting id is not a Graph online meeting meeting_id=%s", reference.identifier)
        return reference.identifier, {
            "subject": None,
            "join_web_url": None,
            "organizer_user_id": None,
            "call_record_id": None,
            "online_meeting_id": None,
        }

    def _ensure_transcript(
        self,
        meeting: Mapping[str, Any],
        *,
        transcript_text: str | None = None,
        allow_fetch: bool = True,
        fetch_attempts: int | None = None,
    ) -> dict[str, Any]:
        meeting_id = str(meeting["id"])
        existing = self._call_store(lambda: self.meeting_store.get_transcript(meeting_id), "load transcript")
        if existing:
            if transcript_text:
                logger.warning(
                    "Transcript already stored, ignoring supplied text meeting_id=%s transcript_id=%s",
                    meeting_id,
                    existing["id"],
                )
            return existing

        if transcript_text and transcript_text.strip():
            raw_content = transcript_text.lstrip("\ufeff")
            source = "manual"
            graph_transcript_id = None
        elif allow_fetch:
            raw_content, graph_transcript_id = self._fetch_transcript_with_retry(
                meeting,
                max_attempts=fetch_attempts or self.settings.transcript_fetch_max_attempts,
            )
            source = "graph"
        else:
            raise TranscriptNotReady(f"No transcript available for meeting {meeting_id}.")

        content = normalize_transcript_content(raw_content)
        if not content:
            raise TranscriptNotReady(f"Transcript for meeting {meeting_id} is empty.")
        document = build_transcript_document(
            meeting_id=meeting_id,
            source=source,
            content=content,
            raw_content=raw_content if looks_like_vtt(raw_content) else None,
            language=detect_language(content),
            graph_transcript_id=graph_transcript_id,
        )
        transcript = self._call_store(lambda: self.meeting_store.save_transcript(document), "save transcript")
        logger.info(
            "Transcript stored meeting_id=%s transcript_id=%s source=%s language=%s",
            meeting_id,
            transcript["id"],
            transcript.get("source"),
            transcript.get("language"),
        )
        return transcript

    def _fetch_transcript_with_retry(
        self,
        meeting: Mapping[str, Any],
        *,
        max_attempts: int,
    ) -> tuple[str, str]:
        current = dict(meeting)
        last_error: PipelineError | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                return self._fetch_transcript(current)
            except TranscriptNotReady as exc:
                last_error = exc
            except UpstreamError as exc:
                if not exc.transient:
                    raise
                last_error = exc
            if attempt < max_attempts:
                delay = self.settings.transcript_fetch_backoff_seconds * (2 ** (attempt - 1))
                logger.info(
                    "Transcript not ready meeting_id=%s attempt=%s/%s retry_in=%.1fs",
                    meeting.get("id"),
                    attempt,
                    max_attempts,
                    delay,
                )
                sleep(delay)
        raise TranscriptNotReady(
            f"Transcript not available after {max_attempts} attempts: {last_error}",
        )

    def _fetch_transcript(self, meeting: dict[str, Any]) -> tuple[str, str]:
        graph_client = self._require_graph_client()
        user_id = self._to_text(meeting.get("organizer_user_id")) or self.settings.graph_default_user_id or None
        online_meeting_id = self._to_text(meeting.get("online_meeting_id"))
        if not online_meeting_id:
            join_web_url = self._to_text(meeting.get("join_web_url"))
            if not join_web_url:
                raise TranscriptNotReady("Meeting has no join URL to locate its online meeting.")
            online_meeting = self._translate_not_found(
                lambda: graph_client.find_online_meeting_by_join_url(join_web_url, user_id=user_id),
            )
            if not online_meeting:
                raise TranscriptNotReady("Online meeting for join URL not found yet.")
            online_meeting_id = str(online_meeting["id"])
            updates: dict[str, Any] = {"online_meeting_id": online_meeting_id}
            subject = self._to_text(online_meeting.get("subject"))
            if subject and not meeting.get("subject"):
                updates["subject"] = subject
                client_reference = extract_client_reference(subject)
                if client_reference:
                    updates["client_reference"] = client_reference
                    updates["calendar_type"] = "potential_client"
            self._call_store(
                lambda: self.meeting_store.update_meeting(str(meeting["id"]), updates),
                "update meeting",
            )
            meeting.update(updates)

        transcripts = self._translate_not_found(
            lambda: graph_client.list_meeting_transcripts(online_meeting_id, user_id=user_id),
        )
        if not transcripts:
            raise TranscriptNotReady(f"No transcripts published yet for online meeting {online_meeting_id}.")
        latest = max(
            transcripts,
            key=lambda item: parse_graph_datetime(item.get("createdDateTime")) or _EPOCH,
        )
        graph_transcript_id = str(latest.get("id"))
        content = self._translate_not_found(
            lambda: graph_client.get_transcript_content(online_meeting_id, graph_transcript_id, user_id=user_id),
        )
        if not content or not content.strip():
            raise TranscriptNotReady(f"Transcript {graph_transcript_id} has no content yet.")
        return content, graph_transcript_id

    def _get_or_create_summary(
        self,
        meeting: Mapping[str, Any],
        transcript: Mapping[str, Any],
    ) -> dict[str, Any]:
        existing = self._call_store(
            lambda: self.meeting_store.get_latest_summary(
                str(meeting["id"]),
                transcript_id=str(transcript["id"]),
            ),
            "load summary",
        )
        if existing:
            return existing
        return self._create_summary(meeting, transcript)

    def _create_summary(self, meeting: Mapping[str, Any], transcript: Mapping[str, Any]) -> dict[str, Any]:
        if self.summary_client is None:
            raise SummarizationError("GEMINI_API_KEY is not configured.")
        language = str(transcript.get("language") or detect_language(str(transcript["content"])))
        # The summary client retries transient failures itself.
        try:
            draft = self.summary_client.summarize(
                meeting_id=str(meeting["id"]),
                transcript_text=str(transcript["content"]),
                language=language,
                subject=self._to_text(meeting.get("subject")),
            )
        except UpstreamError as exc:
            raise SummarizationError(f"Summarization failed: {exc}") from exc

        document = build_summary_document(
            meeting_id=str(meeting["id"]),
            transcript_id=str(transcript["id"]),
            language=language,
            draft=draft.to_dict(),
        )
        return self._call_store(lambda: self.meeting_store.save_summary(document), "save summary")

    def _require_graph_client(self) -> GraphApiClient:
        if self.graph_client is None:
            raise ConfigError("GRAPH_ACCESS_TOKEN is not configured.")
        return self.graph_client

    def _with_upstream_retry(self, operation: Callable[[], T]) -> T:
        max_attempts = self.settings.transcript_fetch_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return operation()
            except UpstreamError as exc:
                if not exc.transient or attempt >= max_attempts:
                    raise
                sleep(self.settings.transcript_fetch_backoff_seconds * (2 ** (attempt - 1)))
        raise UpstreamError("Graph request retries exhausted.")

    def _translate_not_found(self, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except UpstreamError as exc:
            if exc.status_code == 404:
                raise TranscriptNotReady(str(exc)) from exc
            raise

    def _call_store(self, operation: Callable[[], T], action: str) -> T:
        try:
            return operation()
        except PipelineError:
            raise
        except Exception as exc:
            logger.exception("Meeting store failure action=%s", action)
            raise PersistenceError(f"Unable to {action}: {exc}") from exc

    def _to_text(self, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        cleaned = value.strip()
        return cleaned or None
