from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from threading import Lock
from typing import Any
from uuid import uuid4


class MeetingStore(ABC):
    @abstractmethod
    def get_or_create_meeting(self, teams_id: str, defaults: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_meeting(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def save_transcript(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Store the transcript for a meeting, or return the one already stored."""
        raise NotImplementedError

    @abstractmethod
    def get_transcript(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def save_summary(self, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_latest_summary(
        self,
        meeting_id: str,
        *,
        transcript_id: str | None = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._meetings: dict[str, dict[str, Any]] = {}
        self._teams_id_to_meeting_id: dict[str, str] = {}
        self._transcripts: dict[str, dict[str, Any]] = {}
        self._summaries: list[dict[str, Any]] = []
        self._lock = Lock()

    def get_or_create_meeting(self, teams_id: str, defaults: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            existing_id = self._teams_id_to_meeting_id.get(teams_id)
            if existing_id:
                return dict(self._meetings[existing_id])
            meeting = dict(defaults)
            meeting["id"] = uuid4().hex
            meeting["teams_id"] = teams_id
            meeting["created_at"] = datetime.now(UTC)
            self._meetings[meeting["id"]] = meeting
            self._teams_id_to_meeting_id[teams_id] = meeting["id"]
            return dict(meeting)

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if meeting is None:
                by_teams_id = self._teams_id_to_meeting_id.get(meeting_id)
                meeting = self._meetings.get(by_teams_id) if by_teams_id else None
            return dict(meeting) if meeting else None

    def update_meeting(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if meeting is None:
                return False
            meeting.update(dict(updates))
            return True

    def save_transcript(self, record: Mapping[str, Any]) -> dict[str, Any]:
        meeting_id = str(record["meeting_id"])
        with self._lock:
            existing = self._transcripts.get(meeting_id)
            if existing:
                return dict(existing)
            transcript = dict(record)
            transcript["id"] = uuid4().hex
            self._transcripts[meeting_id] = transcript
            return dict(transcript)

    def get_transcript(self, meeting_id: str) -> dict[str, Any] | None:
        with self._lock:
            transcript = self._transcripts.get(meeting_id)
            return dict(transcript) if transcript else None

    def save_summary(self, record: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            summary = dict(record)
            summary["id"] = uuid4().hex
            summary.setdefault("created_at", datetime.now(UTC))
            self._summaries.append(summary)
            return dict(summary)

    def get_latest_summary(
        self,
        meeting_id: str,
        *,
        transcript_id: str | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            for summary in reversed(self._summaries):
                if summary.get("meeting_id") != meeting_id:
                    continue
                if transcript_id and summary.get("transcript_id") != transcript_id:
                    continue
                return dict(summary)
        return None


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        meetings_collection_name: str,
        transcripts_collection_name: str,
        summaries_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import DESCENDING, MongoClient

        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        database = self._client[db_name]
        self._meetings = database[meetings_collection_name]
        self._transcripts = database[transcripts_collection_name]
        self._summaries = database[summaries_collection_name]
        self._meetings.create_index([("teams_id", 1)], unique=True)
        self._transcripts.create_index([("meeting_id", 1)], unique=True)
        self._summaries.create_index([("meeting_id", 1), ("created_at", self._desc)])

    def get_or_create_meeting(self, teams_id: str, defaults: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo import ReturnDocument
        from pymongo.errors import DuplicateKeyError

        insert_payload = dict(defaults)
        insert_payload["_id"] = uuid4().hex
        insert_payload["created_at"] = datetime.now(UTC)
        try:
            stored = self._meetings.find_one_and_update(
                {"teams_id": teams_id},
                {"$setOnInsert": insert_payload},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            stored = self._meetings.find_one({"teams_id": teams_id})
        return self._to_record(stored)

    def get_meeting(self, meeting_id: str) -> dict[str, Any] | None:
        stored = self._meetings.find_one({"$or": [{"_id": meeting_id}, {"teams_id": meeting_id}]})
        return self._to_record(stored) if stored else None

    def update_meeting(self, meeting_id: str, updates: Mapping[str, Any]) -> bool:
        result = self._meetings.update_one({"_id": meeting_id}, {"$set": dict(updates)})
        return bool(result.matched_count)

    def save_transcript(self, record: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        payload = dict(record)
        payload["_id"] = uuid4().hex
        try:
            self._transcripts.insert_one(payload)
        except DuplicateKeyError:
            existing = self._transcripts.find_one({"meeting_id": record["meeting_id"]})
            if not existing:
                raise
            return self._to_record(existing)
        return self._to_record(payload)

    def get_transcript(self, meeting_id: str) -> dict[str, Any] | None:
        stored = self._transcripts.find_one({"meeting_id": meeting_id})
        return self._to_record(stored) if stored else None

    def save_summary(self, record: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(record)
        payload["_id"] = uuid4().hex
        payload.setdefault("created_at", datetime.now(UTC))
        self._summaries.insert_one(payload)
        return self._to_record(payload)

    def get_latest_summary(
        self,
        meeting_id: str,
        *,
        transcript_id: str | None = None,
    ) -> dict[str, Any] | None:
        query: dict[str, Any] = {"meeting_id": meeting_id}
        if transcript_id:
            query["transcript_id"] = transcript_id
        stored = self._summaries.find_one(query, sort=[("created_at", self._desc)])
        return self._to_record(stored) if stored else None

    def _to_record(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        record = dict(stored)
        record["id"] = str(record.pop("_id"))
        return record


def create_meeting_store(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_meetings_collection_name: str,
    mongodb_transcripts_collection_name: str,
    mongodb_summaries_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    return _create_meeting_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_meetings_collection_name=mongodb_meetings_collection_name,
        mongodb_transcripts_collection_name=mongodb_transcripts_collection_name,
        mongodb_summaries_collection_name=mongodb_summaries_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_meetings_collection_name: str,
    mongodb_transcripts_collection_name: str,
    mongodb_summaries_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if store_name == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            meetings_collection_name=mongodb_meetings_collection_name,
            transcripts_collection_name=mongodb_transcripts_collection_name,
            summaries_collection_name=mongodb_summaries_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()


def build_transcript_document(
    *,
    meeting_id: str,
    source: str,
    content: str,
    raw_content: str | None,
    language: str,
    graph_transcript_id: str | None = None,
) -> dict[str, Any]:
    return {
        "meeting_id": meeting_id,
        "source": source,
        "content": content,
        "raw_content": raw_content,
        "language": language,
        "graph_transcript_id": graph_transcript_id,
        "fetched_at": datetime.now(UTC),
    }


def build_summary_document(
    *,
    meeting_id: str,
    transcript_id: str,
    language: str,
    draft: Mapping[str, Any],
) -> dict[str, Any]:
    return {
        "meeting_id": meeting_id,
        "transcript_id": transcript_id,
        "language": language,
        "summary_text": draft.get("summary_text"),
        "summary_en": draft.get("summary_en"),
        "summary_he": draft.get("summary_he"),
        "action_items": list(draft.get("action_items") or []),
        "risks": list(draft.get("risks") or []),
        "questionnaire": dict(draft.get("questionnaire") or {}),
        "questionnaire_version": draft.get("questionnaire_version"),
        "model": draft.get("model"),
        "created_at": datetime.now(UTC),
    }
