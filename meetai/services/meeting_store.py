from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from meetai.core.config import Settings
from meetai.schemas.meeting import MeetingStatus


class MeetingStore(ABC):
    @abstractmethod
    def get_by_id(self, meeting_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_meeting(
        self,
        *,
        name: str,
        agent_id: str,
        user_id: str,
        meeting_id: str | None = None,
        status: MeetingStatus = MeetingStatus.upcoming,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def transition(
        self,
        meeting_id: str,
        *,
        from_statuses: Collection[MeetingStatus],
        updates: Mapping[str, Any],
        conditions: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``updates`` only if the row is in one of ``from_statuses``.

        Returns the updated row, or None when nothing matched.
        """
        raise NotImplementedError

    @abstractmethod
    def update(self, meeting_id: str, updates: Mapping[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def count_by_status(self, status: MeetingStatus) -> int:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._meetings: dict[str, dict[str, Any]] = {}
        # Stands in for the row-level atomicity of a conditional UPDATE.
        self._lock = threading.Lock()

    def get_by_id(self, meeting_id: str) -> dict[str, Any] | None:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            return dict(meeting) if meeting else None

    def create_meeting(
        self,
        *,
        name: str,
        agent_id: str,
        user_id: str,
        meeting_id: str | None = None,
        status: MeetingStatus = MeetingStatus.upcoming,
    ) -> dict[str, Any]:
        record = build_meeting_document(
            meeting_id=meeting_id or uuid4().hex,
            name=name,
            agent_id=agent_id,
            user_id=user_id,
            status=status,
        )
        with self._lock:
            if record["id"] in self._meetings:
                raise ValueError("meeting_already_exists")
            self._meetings[record["id"]] = record
        return dict(record)

    def transition(
        self,
        meeting_id: str,
        *,
        from_statuses: Collection[MeetingStatus],
        updates: Mapping[str, Any],
        conditions: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        allowed = {MeetingStatus(value).value for value in from_statuses}
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if not meeting or meeting.get("status") not in allowed:
                return None
            for field_name, expected in (conditions or {}).items():
                if meeting.get(field_name) != expected:
                    return None
            meeting.update(_prepare_updates(updates))
            return dict(meeting)

    def update(self, meeting_id: str, updates: Mapping[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            meeting = self._meetings.get(meeting_id)
            if not meeting:
                return None
            meeting.update(_prepare_updates(updates))
            return dict(meeting)

    def count_by_status(self, status: MeetingStatus) -> int:
        with self._lock:
            return sum(1 for meeting in self._meetings.values() if meeting.get("status") == status.value)


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient, ReturnDocument

        self._return_after = ReturnDocument.AFTER
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("status", ASCENDING)])
        self._collection.create_index([("agent_id", ASCENDING)])

    def get_by_id(self, meeting_id: str) -> dict[str, Any] | None:
        return _serialize_meeting_record(self._collection.find_one({"_id": meeting_id}))

    def create_meeting(
        self,
        *,
        name: str,
        agent_id: str,
        user_id: str,
        meeting_id: str | None = None,
        status: MeetingStatus = MeetingStatus.upcoming,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        record = build_meeting_document(
            meeting_id=meeting_id or uuid4().hex,
            name=name,
            agent_id=agent_id,
            user_id=user_id,
            status=status,
        )
        payload = dict(record)
        payload["_id"] = payload.pop("id")
        try:
            self._collection.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("meeting_already_exists") from exc
        return record

    def transition(
        self,
        meeting_id: str,
        *,
        from_statuses: Collection[MeetingStatus],
        updates: Mapping[str, Any],
        conditions: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        query: dict[str, Any] = {
            "_id": meeting_id,
            "status": {"$in": [MeetingStatus(value).value for value in from_statuses]},
        }
        query.update(dict(conditions or {}))
        record = self._collection.find_one_and_update(
            query,
            {"$set": _prepare_updates(updates)},
            return_document=self._return_after,
        )
        return _serialize_meeting_record(record)

    def update(self, meeting_id: str, updates: Mapping[str, Any]) -> dict[str, Any] | None:
        record = self._collection.find_one_and_update(
            {"_id": meeting_id},
            {"$set": _prepare_updates(updates)},
            return_document=self._return_after,
        )
        return _serialize_meeting_record(record)

    def count_by_status(self, status: MeetingStatus) -> int:
        return int(self._collection.count_documents({"status": status.value}))


def create_meeting_store(settings: Settings) -> MeetingStore:
    return _create_meeting_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_meetings_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if store_name == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()


def build_meeting_document(
    *,
    meeting_id: str,
    name: str,
    agent_id: str,
    user_id: str,
    status: MeetingStatus,
) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "id": meeting_id,
        "name": name.strip(),
        "agent_id": agent_id,
        "user_id": user_id,
        "status": MeetingStatus(status).value,
        "started_at": None,
        "ended_at": None,
        "transcript_url": None,
        "recording_url": None,
        "summary": None,
        "created_at": now,
        "updated_at": now,
    }


def _prepare_updates(updates: Mapping[str, Any]) -> dict[str, Any]:
    prepared: dict[str, Any] = {}
    for field_name, value in updates.items():
        prepared[field_name] = value.value if isinstance(value, MeetingStatus) else value
    prepared["updated_at"] = datetime.now(UTC)
    return prepared


def _serialize_meeting_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    if "_id" in serialized:
        serialized["id"] = str(serialized.pop("_id"))
    return serialized
