"""Durable background jobs.

Events are persisted by ``JobDispatcher`` and executed by ``JobRunner``.
Each job function receives a ``JobStep`` whose ``run`` memoizes step results
per ``(job_id, step_name)``, so a retried job resumes after its last
completed step instead of starting over.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from meetai.services.job_store import JobStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
JobFunction = Callable[[Mapping[str, Any], "JobStep"], Any]


class NonRetriableJobError(Exception):
    pass


class JobDispatcher:
    def __init__(self, store: JobStore, max_attempts: int = 4) -> None:
        self.store = store
        self.max_attempts = max_attempts

    def send(self, name: str, payload: Mapping[str, Any]) -> str:
        job_id = self.store.enqueue(name=name, payload=payload, max_attempts=self.max_attempts)
        logger.info("Job enqueued name=%s job_id=%s", name, job_id)
        return job_id


class JobStep:
    def __init__(self, store: JobStore, job_id: str) -> None:
        self.store = store
        self.job_id = job_id

    def run(self, step_name: str, fn: Callable[[], T]) -> T:
        record = self.store.get_step_record(self.job_id, step_name)
        if record is not None:
            logger.info("Job step reused job_id=%s step=%s", self.job_id, step_name)
            return record.get("result")

        result = fn()
        self.store.save_step_result(self.job_id, step_name, result)
        logger.info("Job step completed job_id=%s step=%s", self.job_id, step_name)
        return result


class JobRunner:
    def __init__(
        self,
        store: JobStore,
        *,
        retry_backoff_seconds: float = 5.0,
        lease_seconds: float = 900.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.retry_backoff_seconds = retry_backoff_seconds
        self.lease_seconds = lease_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._functions: dict[str, JobFunction] = {}

    def register(self, name: str, function: JobFunction) -> None:
        self._functions[name] = function

    def run_next(self) -> dict[str, Any] | None:
        job = self.store.claim_next(now=self._clock(), lease_seconds=self.lease_seconds)
        if not job:
            return None
        self._execute(job)
        return self.store.get_by_id(job["id"])

    def run_pending(self, limit: int = 100) -> int:
        processed = 0
        while processed < limit:
            if self.run_next() is None:
                break
            processed += 1
        return processed

    def _execute(self, job: Mapping[str, Any]) -> None:
        job_id = str(job["id"])
        name = str(job["name"])
        attempts = int(job.get("attempts", 1))
        max_attempts = int(job.get("max_attempts", 1))
        lease = job.get("lease_expires_at")

        function = self._functions.get(name)
        if function is None:
            self._fail(job, error=f"No function registered for job name {name}.")
            return

        logger.info("Job started name=%s job_id=%s attempt=%s", name, job_id, attempts)
        try:
            function(dict(job.get("payload") or {}), JobStep(self.store, job_id))
        except NonRetriableJobError as exc:
            self._fail(job, error=str(exc) or exc.__class__.__name__)
            return
        except Exception as exc:
            error_message = str(exc) or exc.__class__.__name__
            if attempts >= max_attempts:
                logger.exception("Job attempt failed name=%s job_id=%s", name, job_id)
                self._fail(job, error=error_message)
                return
            available_at = self._clock() + timedelta(seconds=self.retry_backoff_seconds * attempts)
            if not self.store.mark_retry(
                job_id,
                error=error_message,
                available_at=available_at,
                lease_expires_at=lease,
            ):
                _log_lease_lost(job)
                return
            logger.warning(
                "Job retry scheduled name=%s job_id=%s attempt=%s error=%s",
                name,
                job_id,
                attempts,
                error_message,
            )
            return

        if not self.store.mark_completed(job_id, lease_expires_at=lease):
            _log_lease_lost(job)
            return
        logger.info("Job completed name=%s job_id=%s", name, job_id)

    def _fail(self, job: Mapping[str, Any], *, error: str) -> None:
        if not self.store.mark_failed(
            str(job["id"]),
            error=error,
            lease_expires_at=job.get("lease_expires_at"),
        ):
            _log_lease_lost(job)
            return
        logger.error(
            "Job failed permanently name=%s job_id=%s attempts=%s payload=%s error=%s",
            job["name"],
            job["id"],
            job.get("attempts"),
            dict(job.get("payload") or {}),
            error,
        )


def _log_lease_lost(job: Mapping[str, Any]) -> None:
    # Another worker reclaimed the job after the lease expired.
    logger.warning(
        "Job lease lost name=%s job_id=%s attempt=%s",
        job["name"],
        job["id"],
        job.get("attempts"),
    )


class JobWorker:
    """Daemon thread that drains due jobs on a fixed poll interval."""

    def __init__(self, runner: JobRunner, *, poll_interval_seconds: float = 2.0) -> None:
        self._runner = runner
        self._poll_interval_seconds = poll_interval_seconds
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            logger.warning("JobWorker already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, name="JobWorker", daemon=True)
        self._thread.start()
        logger.info("JobWorker started poll_interval_seconds=%s", self._poll_interval_seconds)

    def stop(self) -> None:
        if not self._thread:
            return
        self._stop_event.set()
        self._thread.join(timeout=5.0)
        self._thread = None
        logger.info("JobWorker stopped")

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._runner.run_pending()
            except Exception:
                logger.exception("JobWorker poll failed")
            self._stop_event.wait(self._poll_interval_seconds)
