from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

from meetai.core.config import Settings


class AgentStore(ABC):
    @abstractmethod
    def get_by_id(self, agent_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_many_by_ids(self, agent_ids: Collection[str]) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def create_agent(
        self,
        *,
        name: str,
        instructions: str,
        user_id: str,
        agent_id: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryAgentStore(AgentStore):
    def __init__(self) -> None:
        self._agents: dict[str, dict[str, Any]] = {}

    def get_by_id(self, agent_id: str) -> dict[str, Any] | None:
        agent = self._agents.get(agent_id)
        if not agent:
            return None
        return dict(agent)

    def get_many_by_ids(self, agent_ids: Collection[str]) -> list[dict[str, Any]]:
        return [dict(self._agents[agent_id]) for agent_id in set(agent_ids) if agent_id in self._agents]

    def create_agent(
        self,
        *,
        name: str,
        instructions: str,
        user_id: str,
        agent_id: str | None = None,
    ) -> dict[str, Any]:
        agent = _build_agent_document(
            agent_id=agent_id or uuid4().hex,
            name=name,
            instructions=instructions,
            user_id=user_id,
        )
        if agent["id"] in self._agents:
            raise ValueError("agent_already_exists")
        self._agents[agent["id"]] = agent
        return dict(agent)


class MongoAgentStore(AgentStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index("user_id")

    def get_by_id(self, agent_id: str) -> dict[str, Any] | None:
        return _serialize_agent_record(self._collection.find_one({"_id": agent_id}))

    def get_many_by_ids(self, agent_ids: Collection[str]) -> list[dict[str, Any]]:
        if not agent_ids:
            return []
        cursor = self._collection.find({"_id": {"$in": list(set(agent_ids))}})
        return [_serialize_agent_record(record) for record in cursor]

    def create_agent(
        self,
        *,
        name: str,
        instructions: str,
        user_id: str,
        agent_id: str | None = None,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        agent = _build_agent_document(
            agent_id=agent_id or uuid4().hex,
            name=name,
            instructions=instructions,
            user_id=user_id,
        )
        payload = dict(agent)
        payload["_id"] = payload.pop("id")
        try:
            self._collection.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("agent_already_exists") from exc
        return agent


def create_agent_store(settings: Settings) -> AgentStore:
    return _create_agent_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_agents_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_agent_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> AgentStore:
    if store_name == "mongodb":
        return MongoAgentStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryAgentStore()


def clear_agent_store_cache() -> None:
    _create_agent_store_cached.cache_clear()


def _build_agent_document(
    *,
    agent_id: str,
    name: str,
    instructions: str,
    user_id: str,
) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "id": agent_id,
        "name": name.strip(),
        "instructions": instructions.strip(),
        "user_id": user_id,
        "created_at": now,
        "updated_at": now,
    }


def _serialize_agent_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    if "_id" in serialized:
        serialized["id"] = str(serialized.pop("_id"))
    return serialized
