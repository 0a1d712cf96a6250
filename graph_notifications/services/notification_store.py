from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from threading import Lock
from typing import Any


class NotificationStore(ABC):
    @abstractmethod
    def claim(
        self,
        *,
        dedup_key: str,
        notification_id: str,
        claimed_at: datetime,
        window_start: datetime,
    ) -> bool:
        """Atomically take ownership of a dedup key.

        Succeeds when the key was never claimed, its claim was released, or the
        claim is older than ``window_start``.
        """
        raise NotImplementedError

    @abstractmethod
    def release(self, *, dedup_key: str, notification_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def insert(self, record: Mapping[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, notification_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_latest_by_dedup_key(self, dedup_key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def transition(
        self,
        notification_id: str,
        *,
        from_states: Iterable[str],
        to_state: str,
        updates: Mapping[str, Any] | None = None,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, *, limit: int, state: str | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryNotificationStore(NotificationStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._claims: dict[str, dict[str, Any]] = {}
        self._lock = Lock()

    def claim(
        self,
        *,
        dedup_key: str,
        notification_id: str,
        claimed_at: datetime,
        window_start: datetime,
    ) -> bool:
        with self._lock:
            existing = self._claims.get(dedup_key)
            if existing and not existing["released"] and existing["claimed_at"] >= window_start:
                return False
            self._claims[dedup_key] = {
                "notification_id": notification_id,
                "claimed_at": claimed_at,
                "released": False,
            }
            return True

    def release(self, *, dedup_key: str, notification_id: str) -> bool:
        with self._lock:
            existing = self._claims.get(dedup_key)
            if not existing or existing["notification_id"] != notification_id:
                return False
            existing["released"] = True
            return True

    def insert(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            stored_record = dict(record)
            stored_record["updated_at"] = datetime.now(UTC)
            self._records[str(record["id"])] = stored_record

    def get_by_id(self, notification_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(notification_id)
            return dict(record) if record else None

    def get_latest_by_dedup_key(self, dedup_key: str) -> dict[str, Any] | None:
        with self._lock:
            matches = [record for record in self._records.values() if record.get("dedup_key") == dedup_key]
            if not matches:
                return None
            return dict(max(matches, key=lambda record: record["received_at"]))

    def transition(
        self,
        notification_id: str,
        *,
        from_states: Iterable[str],
        to_state: str,
        updates: Mapping[str, Any] | None = None,
    ) -> bool:
        allowed_states = {str(state) for state in from_states}
        with self._lock:
            record = self._records.get(notification_id)
            if record is None or record.get("processing_state") not in allowed_states:
                return False
            if updates:
                record.update(dict(updates))
            record["processing_state"] = str(to_state)
            record["updated_at"] = datetime.now(UTC)
            return True

    def list_recent(self, *, limit: int, state: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = [
                dict(record)
                for record in self._records.values()
                if state is None or record.get("processing_state") == state
            ]
        items.sort(key=lambda record: record["received_at"], reverse=True)
        return items[:limit]


class MongoNotificationStore(NotificationStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        claims_collection_name: str,
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
        self._collection = database[collection_name]
        self._claims = database[claims_collection_name]
        self._collection.create_index([("received_at", self._desc)])
        self._collection.create_index([("dedup_key", 1), ("received_at", self._desc)])
        self._collection.create_index([("processing_state", 1), ("received_at", self._desc)])

    def claim(
        self,
        *,
        dedup_key: str,
        notification_id: str,
        claimed_at: datetime,
        window_start: datetime,
    ) -> bool:
        from pymongo.errors import DuplicateKeyError

        try:
            # A fresh, unreleased claim does not match the filter, so the upsert
            # collides on _id and the claim is refused.
            self._claims.find_one_and_update(
                {
                    "_id": dedup_key,
                    "$or": [
                        {"released": True},
                        {"claimed_at": {"$lt": window_start}},
                    ],
                },
                {
                    "$set": {
                        "notification_id": notification_id,
                        "claimed_at": claimed_at,
                        "released": False,
                    },
                },
                upsert=True,
            )
        except DuplicateKeyError:
            return False
        return True

    def release(self, *, dedup_key: str, notification_id: str) -> bool:
        result = self._claims.update_one(
            {"_id": dedup_key, "notification_id": notification_id},
            {"$set": {"released": True}},
        )
        return bool(result.matched_count)

    def insert(self, record: Mapping[str, Any]) -> None:
        payload = dict(record)
        payload["_id"] = str(payload.pop("id"))
        payload["updated_at"] = datetime.now(UTC)
        self._collection.insert_one(payload)

    def get_by_id(self, notification_id: str) -> dict[str, Any] | None:
        stored = self._collection.find_one({"_id": notification_id})
        return self._to_record(stored) if stored else None

    def get_latest_by_dedup_key(self, dedup_key: str) -> dict[str, Any] | None:
        stored = self._collection.find_one(
            {"dedup_key": dedup_key},
            sort=[("received_at", self._desc)],
        )
        return self._to_record(stored) if stored else None

    def transition(
        self,
        notification_id: str,
        *,
        from_states: Iterable[str],
        to_state: str,
        updates: Mapping[str, Any] | None = None,
    ) -> bool:
        payload = dict(updates or {})
        payload["processing_state"] = str(to_state)
        payload["updated_at"] = datetime.now(UTC)
        result = self._collection.update_one(
            {"_id": notification_id, "processing_state": {"$in": [str(state) for state in from_states]}},
            {"$set": payload},
        )
        return bool(result.matched_count)

    def list_recent(self, *, limit: int, state: str | None = None) -> list[dict[str, Any]]:
        query: dict[str, Any] = {}
        if state:
            query["processing_state"] = state
        cursor = self._collection.find(query).sort("received_at", self._desc).limit(limit)
        return [self._to_record(stored) for stored in cursor]

    def _to_record(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        record = dict(stored)
        record["id"] = str(record.pop("_id"))
        return record


def create_notification_store(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_claims_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> NotificationStore:
    return _create_notification_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_claims_collection_name=mongodb_claims_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_notification_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_claims_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> NotificationStore:
    if store_name == "mongodb":
        return MongoNotificationStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            claims_collection_name=mongodb_claims_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryNotificationStore()


def clear_notification_store_cache() -> None:
    _create_notification_store_cached.cache_clear()


def build_notification_document(
    *,
    notification_id: str,
    subscription_id: str,
    change_type: str,
    resource: str | None,
    resource_id: str,
    resource_data: Mapping[str, Any] | None,
    dedup_key: str,
    received_at: datetime,
    resource_type: str | None = None,
) -> dict[str, Any]:
    return {
        "id": notification_id,
        "subscription_id": subscription_id,
        "change_type": change_type,
        "resource": resource,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "resource_data": dict(resource_data) if resource_data else {},
        "dedup_key": dedup_key,
        "received_at": received_at,
        "processing_state": "received",
        "failure_reason": None,
        "error": None,
        "attempts": 0,
        "meeting_id": None,
    }
