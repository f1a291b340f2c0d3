from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import uuid4

from meetai.core.config import Settings
from meetai.schemas.job import JobStatus


class JobStore(ABC):
    @abstractmethod
    def enqueue(self, *, name: str, payload: Mapping[str, Any], max_attempts: int) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, job_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def claim_next(self, *, now: datetime, lease_seconds: float) -> dict[str, Any] | None:
        """Move the oldest due job to ``running`` and count the attempt.

        Jobs left ``running`` past their lease are claimable again, which is
        what makes delivery at-least-once when a worker dies mid-job.
        """
        raise NotImplementedError

    # The mark_* methods take the lease returned by claim_next. When given, the
    # write only lands while that lease still owns the job, and False is
    # returned once another worker has reclaimed it.
    @abstractmethod
    def mark_completed(self, job_id: str, *, lease_expires_at: datetime | None = None) -> bool:
        raise NotImplementedError

    @abstractmethod
    def mark_retry(
        self,
        job_id: str,
        *,
        error: str,
        available_at: datetime,
        lease_expires_at: datetime | None = None,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def mark_failed(
        self,
        job_id: str,
        *,
        error: str,
        lease_expires_at: datetime | None = None,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_step_record(self, job_id: str, step_name: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def save_step_result(self, job_id: str, step_name: str, result: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_jobs(self, *, status: JobStatus | None, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def count_by_status(self, status: JobStatus) -> int:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}
        self._steps: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()

    def enqueue(self, *, name: str, payload: Mapping[str, Any], max_attempts: int) -> str:
        job = build_job_document(name=name, payload=payload, max_attempts=max_attempts)
        with self._lock:
            self._jobs[job["id"]] = job
        return job["id"]

    def get_by_id(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def claim_next(self, *, now: datetime, lease_seconds: float) -> dict[str, Any] | None:
        with self._lock:
            candidates = [job for job in self._jobs.values() if _is_claimable(job, now)]
            if not candidates:
                return None
            job = min(candidates, key=lambda item: (item["available_at"], item["created_at"]))
            job["status"] = JobStatus.running.value
            job["attempts"] += 1
            job["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            job["updated_at"] = now
            return dict(job)

    def mark_completed(self, job_id: str, *, lease_expires_at: datetime | None = None) -> bool:
        return self._set(
            job_id,
            lease_expires_at,
            status=JobStatus.completed.value,
            last_error=None,
            lease_expires_at=None,
        )

    def mark_retry(
        self,
        job_id: str,
        *,
        error: str,
        available_at: datetime,
        lease_expires_at: datetime | None = None,
    ) -> bool:
        return self._set(
            job_id,
            lease_expires_at,
            status=JobStatus.pending.value,
            last_error=error,
            available_at=available_at,
            lease_expires_at=None,
        )

    def mark_failed(
        self,
        job_id: str,
        *,
        error: str,
        lease_expires_at: datetime | None = None,
    ) -> bool:
        return self._set(
            job_id,
            lease_expires_at,
            status=JobStatus.failed.value,
            last_error=error,
            lease_expires_at=None,
        )

    def get_step_record(self, job_id: str, step_name: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._steps.get((job_id, step_name))
        if not record:
            return None
        return dict(record)

    def save_step_result(self, job_id: str, step_name: str, result: Any) -> None:
        with self._lock:
            self._steps[(job_id, step_name)] = {
                "job_id": job_id,
                "step_name": step_name,
                "result": result,
                "created_at": datetime.now(UTC),
            }

    def list_jobs(self, *, status: JobStatus | None, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            jobs = [
                dict(job)
                for job in self._jobs.values()
                if status is None or job["status"] == status.value
            ]
        jobs.sort(key=lambda item: item["created_at"], reverse=True)
        return jobs[:limit]

    def count_by_status(self, status: JobStatus) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job["status"] == status.value)

    def _set(self, job_id: str, lease: datetime | None, **updates: Any) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return False
            if lease is not None and (
                job["status"] != JobStatus.running.value or job.get("lease_expires_at") != lease
            ):
                return False
            job.update(updates)
            job["updated_at"] = datetime.now(UTC)
            return True


class MongoJobStore(JobStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        jobs_collection_name: str,
        steps_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

        self._asc = ASCENDING
        self._desc = DESCENDING
        self._return_after = ReturnDocument.AFTER
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        database = self._client[db_name]
        self._jobs = database[jobs_collection_name]
        self._steps = database[steps_collection_name]
        self._jobs.create_index([("status", ASCENDING), ("available_at", ASCENDING)])
        self._jobs.create_index([("created_at", DESCENDING)])
        self._steps.create_index([("job_id", ASCENDING), ("step_name", ASCENDING)], unique=True)

    def enqueue(self, *, name: str, payload: Mapping[str, Any], max_attempts: int) -> str:
        job = build_job_document(name=name, payload=payload, max_attempts=max_attempts)
        document = dict(job)
        document["_id"] = document.pop("id")
        self._jobs.insert_one(document)
        return job["id"]

    def get_by_id(self, job_id: str) -> dict[str, Any] | None:
        return _serialize_job_record(self._jobs.find_one({"_id": job_id}))

    def claim_next(self, *, now: datetime, lease_seconds: float) -> dict[str, Any] | None:
        record = self._jobs.find_one_and_update(
            {
                "$or": [
                    {"status": JobStatus.pending.value, "available_at": {"$lte": now}},
                    {"status": JobStatus.running.value, "lease_expires_at": {"$lte": now}},
                ],
            },
            {
                "$set": {
                    "status": JobStatus.running.value,
                    "lease_expires_at": now + timedelta(seconds=lease_seconds),
                    "updated_at": now,
                },
                "$inc": {"attempts": 1},
            },
            sort=[("available_at", self._asc), ("created_at", self._asc)],
            return_document=self._return_after,
        )
        return _serialize_job_record(record)

    def mark_completed(self, job_id: str, *, lease_expires_at: datetime | None = None) -> bool:
        return self._set(
            job_id,
            lease_expires_at,
            status=JobStatus.completed.value,
            last_error=None,
            lease_expires_at=None,
        )

    def mark_retry(
        self,
        job_id: str,
        *,
        error: str,
        available_at: datetime,
        lease_expires_at: datetime | None = None,
    ) -> bool:
        return self._set(
            job_id,
            lease_expires_at,
            status=JobStatus.pending.value,
            last_error=error,
            available_at=available_at,
            lease_expires_at=None,
        )

    def mark_failed(
        self,
        job_id: str,
        *,
        error: str,
        lease_expires_at: datetime | None = None,
    ) -> bool:
        return self._set(
            job_id,
            lease_expires_at,
            status=JobStatus.failed.value,
            last_error=error,
            lease_expires_at=None,
        )

    def get_step_record(self, job_id: str, step_name: str) -> dict[str, Any] | None:
        return self._steps.find_one({"job_id": job_id, "step_name": step_name}, {"_id": 0})

    def save_step_result(self, job_id: str, step_name: str, result: Any) -> None:
        self._steps.update_one(
            {"job_id": job_id, "step_name": step_name},
            {
                "$set": {"result": result},
                "$setOnInsert": {"created_at": datetime.now(UTC)},
            },
            upsert=True,
        )

    def list_jobs(self, *, status: JobStatus | None, limit: int) -> list[dict[str, Any]]:
        query = {"status": status.value} if status else {}
        cursor = self._jobs.find(query).sort("created_at", self._desc).limit(limit)
        return [_serialize_job_record(record) for record in cursor]

    def count_by_status(self, status: JobStatus) -> int:
        return int(self._jobs.count_documents({"status": status.value}))

    def _set(self, job_id: str, lease: datetime | None, **updates: Any) -> bool:
        query: dict[str, Any] = {"_id": job_id}
        if lease is not None:
            query.update({"status": JobStatus.running.value, "lease_expires_at": lease})
        updates["updated_at"] = datetime.now(UTC)
        result = self._jobs.update_one(query, {"$set": updates})
        return result.matched_count > 0


def create_job_store(settings: Settings) -> JobStore:
    return _create_job_store_cached(
        store_name=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_jobs_collection=settings.mongodb_jobs_collection,
        mongodb_job_steps_collection=settings.mongodb_job_steps_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_job_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_jobs_collection: str,
    mongodb_job_steps_collection: str,
    mongodb_connect_timeout_ms: int,
) -> JobStore:
    if store_name == "mongodb":
        return MongoJobStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            jobs_collection_name=mongodb_jobs_collection,
            steps_collection_name=mongodb_job_steps_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )
    return InMemoryJobStore()


def clear_job_store_cache() -> None:
    _create_job_store_cached.cache_clear()


def build_job_document(
    *,
    name: str,
    payload: Mapping[str, Any],
    max_attempts: int,
) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "id": uuid4().hex,
        "name": name,
        "payload": dict(payload),
        "status": JobStatus.pending.value,
        "attempts": 0,
        "max_attempts": max(max_attempts, 1),
        "last_error": None,
        "available_at": now,
        "lease_expires_at": None,
        "created_at": now,
        "updated_at": now,
    }


def _is_claimable(job: Mapping[str, Any], now: datetime) -> bool:
    if job["status"] == JobStatus.pending.value:
        return job["available_at"] <= now
    if job["status"] == JobStatus.running.value:
        lease_expires_at = job.get("lease_expires_at")
        return lease_expires_at is not None and lease_expires_at <= now
    return False


def _serialize_job_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    if "_id" in serialized:
        serialized["id"] = str(serialized.pop("_id"))
    return serialized
