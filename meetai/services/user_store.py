from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from meetai.core.config import Settings


class UserStore(ABC):
    @abstractmethod
    def get_users_by_ids(self, user_ids: Collection[str]) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def create_user(
        self,
        *,
        name: str,
        email: str,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self) -> None:
        self._users_by_id: dict[str, dict[str, Any]] = {}
        self._user_id_by_email: dict[str, str] = {}

    def get_users_by_ids(self, user_ids: Collection[str]) -> list[dict[str, Any]]:
        return [
            dict(self._users_by_id[user_id])
            for user_id in set(user_ids)
            if user_id in self._users_by_id
        ]

    def create_user(
        self,
        *,
        name: str,
        email: str,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        normalized_email = _normalize_email(email)
        if normalized_email in self._user_id_by_email:
            raise ValueError("email_already_exists")

        now = datetime.now(UTC)
        user = {
            "id": user_id or uuid4().hex,
            "name": name.strip(),
            "email": normalized_email,
            "created_at": now,
            "updated_at": now,
        }
        self._users_by_id[user["id"]] = user
        self._user_id_by_email[normalized_email] = user["id"]
        return dict(user)


class MongoUserStore(UserStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        users_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._users = self._client[db_name][users_collection_name]

    def get_users_by_ids(self, user_ids: Collection[str]) -> list[dict[str, Any]]:
        if not user_ids:
            return []
        cursor = self._users.find({"_id": {"$in": list(set(user_ids))}})
        return [_serialize_user_record(record) for record in cursor]

    def create_user(
        self,
        *,
        name: str,
        email: str,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        now = datetime.now(UTC)
        payload = {
            "_id": user_id or uuid4().hex,
            "name": name.strip(),
            "email": _normalize_email(email),
            "created_at": now,
            "updated_at": now,
        }
        try:
            self._users.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("user_already_exists") from exc
        serialized = _serialize_user_record(payload)
        if not serialized:
            raise RuntimeError("Unable to read created user.")
        return serialized


def _serialize_user_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    if "_id" in serialized:
        serialized["id"] = str(serialized.pop("_id"))
    return serialized


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user_store(settings: Settings) -> UserStore:
    return _create_user_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_user_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_users_collection: str,
    mongodb_connect_timeout_ms: int,
) -> UserStore:
    if data_store == "mongodb":
        return MongoUserStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            users_collection_name=mongodb_users_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryUserStore()


def clear_user_store_cache() -> None:
    _create_user_store_cached.cache_clear()
