from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from threading import Lock
from typing import Any


class SubscriptionStore(ABC):
    @abstractmethod
    def upsert(self, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, subscription_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_by_status(self, statuses: Iterable[str]) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def update(self, subscription_id: str, updates: Mapping[str, Any]) -> bool:
        raise NotImplementedError


class InMemorySubscriptionStore(SubscriptionStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = Lock()

    def upsert(self, record: Mapping[str, Any]) -> dict[str, Any]:
        subscription_id = str(record["id"])
        with self._lock:
            stored_record = dict(self._records.get(subscription_id, {}))
            stored_record.update(dict(record))
            stored_record.setdefault("created_at", datetime.now(UTC))
            stored_record["updated_at"] = datetime.now(UTC)
            self._records[subscription_id] = stored_record
            return dict(stored_record)

    def get_by_id(self, subscription_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(subscription_id)
            return dict(record) if record else None

    def list_all(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(record) for record in self._records.values()]

    def list_by_status(self, statuses: Iterable[str]) -> list[dict[str, Any]]:
        wanted = set(statuses)
        with self._lock:
            return [dict(record) for record in self._records.values() if record.get("status") in wanted]

    def update(self, subscription_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            record = self._records.get(subscription_id)
            if record is None:
                return False
            record.update(dict(updates))
            record["updated_at"] = datetime.now(UTC)
            return True


class MongoSubscriptionStore(SubscriptionStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("status", ASCENDING), ("expiration_at", ASCENDING)])

    def upsert(self, record: Mapping[str, Any]) -> dict[str, Any]:
        from pymongo import ReturnDocument

        payload = dict(record)
        subscription_id = str(payload.pop("id"))
        payload.pop("created_at", None)
        now = datetime.now(UTC)
        payload["updated_at"] = now
        stored = self._collection.find_one_and_update(
            {"_id": subscription_id},
            {"$set": payload, "$setOnInsert": {"created_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._to_record(stored)

    def get_by_id(self, subscription_id: str) -> dict[str, Any] | None:
        stored = self._collection.find_one({"_id": subscription_id})
        return self._to_record(stored) if stored else None

    def list_all(self) -> list[dict[str, Any]]:
        return [self._to_record(stored) for stored in self._collection.find()]

    def list_by_status(self, statuses: Iterable[str]) -> list[dict[str, Any]]:
        cursor = self._collection.find({"status": {"$in": list(statuses)}})
        return [self._to_record(stored) for stored in cursor]

    def update(self, subscription_id: str, updates: Mapping[str, Any]) -> bool:
        payload = dict(updates)
        payload["updated_at"] = datetime.now(UTC)
        result = self._collection.update_one({"_id": subscription_id}, {"$set": payload})
        return bool(result.matched_count)

    def _to_record(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        record = dict(stored)
        record["id"] = str(record.pop("_id"))
        return record


def create_subscription_store(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> SubscriptionStore:
    return _create_subscription_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_subscription_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> SubscriptionStore:
    if store_name == "mongodb":
        return MongoSubscriptionStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemorySubscriptionStore()


def clear_subscription_store_cache() -> None:
    _create_subscription_store_cached.cache_clear()


def build_subscription_document(
    *,
    subscription_id: str,
    resource_type: str,
    resource: str,
    change_type: str,
    client_state: str,
    notification_url: str | None,
    expiration_at: datetime,
    status: str,
) -> dict[str, Any]:
    return {
        "id": subscription_id,
        "resource_type": resource_type,
        "resource": resource,
        "change_type": change_type,
        "client_state": client_state,
        "notification_url": notification_url,
        "expiration_at": expiration_at,
        "status": status,
        "last_renewed_at": None,
        "last_error": None,
    }
