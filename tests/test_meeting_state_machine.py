import threading
from datetime import UTC, datetime

import pytest

from meetai.schemas.meeting import MeetingStatus
from meetai.services.agent_store import InMemoryAgentStore
from meetai.services.job_runner import JobDispatcher
from meetai.services.job_store import InMemoryJobStore
from meetai.services.meeting_state_machine import (
    AgentConnectionError,
    MeetingNotFoundError,
    MeetingStateMachine,
)
from meetai.services.meeting_store import InMemoryMeetingStore
from meetai.services.stream_api_client import StreamApiError


class _FakeVideoClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.connect_calls = 0
        self._lock = threading.Lock()

    def connect_agent(self, *, call_id: str, agent_user_id: str, instructions: str) -> None:
        with self._lock:
            self.connect_calls += 1
        if self.error:
            raise self.error

    def end_call(self, call_id: str) -> None:
        return None


def _build(video_client: _FakeVideoClient | None = None, status: MeetingStatus = MeetingStatus.upcoming):
    meeting_store = InMemoryMeetingStore()
    agent_store = InMemoryAgentStore()
    job_store = InMemoryJobStore()
    agent_store.create_agent(agent_id="agent-1", name="Coach", instructions="Be brief.", user_id="user-1")
    meeting_store.create_meeting(
        meeting_id="m1",
        name="Weekly sync",
        agent_id="agent-1",
        user_id="user-1",
        status=status,
    )
    machine = MeetingStateMachine(
        meeting_store=meeting_store,
        agent_store=agent_store,
        video_client=video_client or _FakeVideoClient(),
        dispatcher=JobDispatcher(job_store),
        clock=lambda: datetime(2025, 3, 1, 10, 0, tzinfo=UTC),
    )
    return machine, meeting_store, job_store


def test_concurrent_starts_apply_once() -> None:
    video_client = _FakeVideoClient()
    machine, meeting_store, _ = _build(video_client)
    results = []
    barrier = threading.Barrier(8)

    def start() -> None:
        barrier.wait()
        results.append(machine.start("m1"))

    threads = [threading.Thread(target=start) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.applied) == 1
    assert video_client.connect_calls == 1
    assert meeting_store.get_by_id("m1")["status"] == MeetingStatus.active.value


def test_start_compensates_when_agent_connection_fails() -> None:
    machine, meeting_store, _ = _build(_FakeVideoClient(error=StreamApiError("boom")))

    with pytest.raises(AgentConnectionError):
        machine.start("m1")

    meeting = meeting_store.get_by_id("m1")
    assert meeting["status"] == MeetingStatus.upcoming.value
    assert meeting["started_at"] is None


def test_end_after_completion_is_not_found() -> None:
    machine, meeting_store, _ = _build(status=MeetingStatus.completed)

    with pytest.raises(MeetingNotFoundError):
        machine.end("m1")

    assert meeting_store.get_by_id("m1")["status"] == MeetingStatus.completed.value


def test_replayed_end_is_a_noop() -> None:
    machine, meeting_store, _ = _build(status=MeetingStatus.processing)

    result = machine.end("m1")

    assert result.applied is False
    assert meeting_store.get_by_id("m1")["ended_at"] is None


def test_end_of_cancelled_meeting_is_not_found() -> None:
    machine, _, _ = _build(status=MeetingStatus.cancelled)

    with pytest.raises(MeetingNotFoundError):
        machine.end("m1")


def test_store_transcript_enqueues_processing_job() -> None:
    machine, meeting_store, job_store = _build(status=MeetingStatus.processing)

    machine.store_transcript("m1", "https://cdn.example.com/m1.jsonl")

    assert meeting_store.get_by_id("m1")["transcript_url"] == "https://cdn.example.com/m1.jsonl"
    jobs = job_store.list_jobs(status=None, limit=10)
    assert [job["name"] for job in jobs] == ["meetings/processing"]


def test_start_of_completed_meeting_is_not_found() -> None:
    video_client = _FakeVideoClient()
    machine, meeting_store, _ = _build(video_client, status=MeetingStatus.completed)

    with pytest.raises(MeetingNotFoundError):
        machine.start("m1")

    assert video_client.connect_calls == 0
    assert meeting_store.get_by_id("m1")["status"] == MeetingStatus.completed.value


def test_start_of_processing_meeting_is_not_found() -> None:
    video_client = _FakeVideoClient()
    machine, _, _ = _build(video_client, status=MeetingStatus.processing)

    with pytest.raises(MeetingNotFoundError):
        machine.start("m1")

    assert video_client.connect_calls == 0


def test_replayed_start_is_a_noop() -> None:
    video_client = _FakeVideoClient()
    machine, _, _ = _build(video_client, status=MeetingStatus.active)

    result = machine.start("m1")

    assert result.applied is False
    assert video_client.connect_calls == 0
