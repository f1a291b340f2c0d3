import json
from datetime import UTC, datetime, timedelta
from typing import Any

from meetai.core.config import get_settings
from meetai.schemas.job import JobStatus
from meetai.schemas.meeting import MeetingStatus
from meetai.services.agent_store import InMemoryAgentStore
from meetai.services.job_runner import JobDispatcher
from meetai.services.job_store import InMemoryJobStore
from meetai.services.meeting_processing import (
    SUMMARIZER_SYSTEM_PROMPT,
    MeetingProcessingPipeline,
    create_job_runner,
)
from meetai.services.meeting_state_machine import MEETINGS_PROCESSING_EVENT
from meetai.services.meeting_store import InMemoryMeetingStore
from meetai.services.openai_completion_client import OpenAiCompletionError
from meetai.services.transcript_client import TranscriptFetchError
from meetai.services.transcript_enrichment import SpeakerResolver
from meetai.services.user_store import InMemoryUserStore

TRANSCRIPT_URL = "https://cdn.example.com/m1.jsonl"


class _FakeTranscriptClient:
    def __init__(self, raw_text: str = "", error: Exception | None = None) -> None:
        self.raw_text = raw_text
        self.error = error
        self.requested_urls: list[str] = []

    def fetch_text(self, url: str) -> str:
        self.requested_urls.append(url)
        if self.error:
            raise self.error
        return self.raw_text


class _FakeCompletionClient:
    def __init__(self, replies: list[Any]) -> None:
        self.replies = list(replies)
        self.calls: list[list[dict[str, str]]] = []

    def complete(self, messages: list[dict[str, str]]) -> str:
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class _FlakyMeetingStore(InMemoryMeetingStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def update(self, meeting_id: str, updates):
        if "summary" in updates and self.failures > 0:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        return super().update(meeting_id, updates)


def _transcript_lines(*items: dict[str, Any]) -> str:
    return "\n".join(json.dumps(item) for item in items) + "\n"


def _build(
    *,
    raw_text: str,
    replies: list[Any],
    meeting_store: InMemoryMeetingStore | None = None,
    transcript_error: Exception | None = None,
):
    meeting_store = meeting_store or InMemoryMeetingStore()
    user_store = InMemoryUserStore()
    agent_store = InMemoryAgentStore()
    job_store = InMemoryJobStore()
    user_store.create_user(user_id="user-1", name="Ana Ruiz", email="ana@example.com")
    agent_store.create_agent(
        agent_id="agent-1",
        name="Interview Coach",
        instructions="Be brief.",
        user_id="user-1",
    )
    meeting_store.create_meeting(
        meeting_id="m1",
        name="Weekly sync",
        agent_id="agent-1",
        user_id="user-1",
        status=MeetingStatus.processing,
    )
    transcript_client = _FakeTranscriptClient(raw_text, error=transcript_error)
    completion_client = _FakeCompletionClient(replies)
    pipeline = MeetingProcessingPipeline(
        meeting_store=meeting_store,
        transcript_client=transcript_client,
        speaker_resolver=SpeakerResolver(user_store=user_store, agent_store=agent_store),
        completion_client=completion_client,
    )
    runner = create_job_runner(get_settings(), store=job_store, pipeline=pipeline)
    return {
        "meetings": meeting_store,
        "jobs": job_store,
        "runner": runner,
        "transcript": transcript_client,
        "completion": completion_client,
    }


def _enqueue(job_store: InMemoryJobStore) -> str:
    return JobDispatcher(job_store, max_attempts=3).send(
        MEETINGS_PROCESSING_EVENT,
        {"meetingId": "m1", "transcriptUrl": TRANSCRIPT_URL},
    )


def _make_due(job_store: InMemoryJobStore, job_id: str) -> None:
    job_store._jobs[job_id]["available_at"] = datetime.now(UTC) - timedelta(seconds=1)


def test_pipeline_summarizes_transcript_and_completes_meeting() -> None:
    raw_text = _transcript_lines(
        {"speaker_id": "user-1", "type": "speech", "text": "Let's ship Friday.", "start_ts": 0, "stop_ts": 1500},
        {"speaker_id": "agent-1", "type": "speech", "text": "Noted.", "start_ts": 1600, "stop_ts": 2000},
        {"speaker_id": "ghost", "type": "speech", "text": "Hello?", "start_ts": 2100, "stop_ts": 2500},
    )
    context = _build(raw_text=raw_text, replies=["### Overview\nShip Friday."])
    job_id = _enqueue(context["jobs"])

    context["runner"].run_pending()

    meeting = context["meetings"].get_by_id("m1")
    assert meeting["status"] == MeetingStatus.completed.value
    assert meeting["summary"] == "### Overview\nShip Friday."
    assert context["jobs"].get_by_id(job_id)["status"] == JobStatus.completed.value
    assert context["transcript"].requested_urls == [TRANSCRIPT_URL]

    messages = context["completion"].calls[0]
    assert messages[0] == {"role": "system", "content": SUMMARIZER_SYSTEM_PROMPT}
    prefix = "Summarize the following transcript: "
    assert messages[1]["content"].startswith(prefix)
    sent_items = json.loads(messages[1]["content"][len(prefix):])
    assert [item["user"]["name"] for item in sent_items] == ["Ana Ruiz", "Interview Coach", "Unknown"]
    assert [item["text"] for item in sent_items] == ["Let's ship Friday.", "Noted.", "Hello?"]


def test_rerunning_pipeline_keeps_meeting_completed() -> None:
    raw_text = _transcript_lines({"speaker_id": "user-1", "text": "Hi"})
    context = _build(raw_text=raw_text, replies=["First summary", "Second summary"])

    _enqueue(context["jobs"])
    context["runner"].run_pending()
    _enqueue(context["jobs"])
    context["runner"].run_pending()

    meeting = context["meetings"].get_by_id("m1")
    assert meeting["status"] == MeetingStatus.completed.value
    assert meeting["summary"] == "Second summary"


def test_non_retriable_llm_error_fails_job_and_leaves_meeting_processing() -> None:
    raw_text = _transcript_lines({"speaker_id": "user-1", "text": "Hi"})
    context = _build(
        raw_text=raw_text,
        replies=[OpenAiCompletionError("OpenAI HTTP 400: bad request", retryable=False)],
    )
    job_id = _enqueue(context["jobs"])

    context["runner"].run_pending()

    job = context["jobs"].get_by_id(job_id)
    assert job["status"] == JobStatus.failed.value
    assert job["attempts"] == 1
    assert "bad request" in job["last_error"]
    meeting = context["meetings"].get_by_id("m1")
    assert meeting["status"] == MeetingStatus.processing.value
    assert meeting["summary"] is None


def test_retryable_llm_error_is_retried_without_refetching() -> None:
    raw_text = _transcript_lines({"speaker_id": "user-1", "text": "Hi"})
    context = _build(
        raw_text=raw_text,
        replies=[OpenAiCompletionError("OpenAI HTTP 503", retryable=True), "Recovered summary"],
    )
    job_id = _enqueue(context["jobs"])

    context["runner"].run_pending()
    assert context["jobs"].get_by_id(job_id)["status"] == JobStatus.pending.value

    _make_due(context["jobs"], job_id)
    context["runner"].run_pending()

    assert context["jobs"].get_by_id(job_id)["status"] == JobStatus.completed.value
    assert context["meetings"].get_by_id("m1")["summary"] == "Recovered summary"
    assert context["transcript"].requested_urls == [TRANSCRIPT_URL]


def test_save_retry_reuses_memoized_summary() -> None:
    raw_text = _transcript_lines({"speaker_id": "user-1", "text": "Hi"})
    context = _build(
        raw_text=raw_text,
        replies=["Only summary"],
        meeting_store=_FlakyMeetingStore(failures=1),
    )
    job_id = _enqueue(context["jobs"])

    context["runner"].run_pending()
    assert context["jobs"].get_by_id(job_id)["status"] == JobStatus.pending.value

    _make_due(context["jobs"], job_id)
    context["runner"].run_pending()

    assert len(context["completion"].calls) == 1
    meeting = context["meetings"].get_by_id("m1")
    assert meeting["status"] == MeetingStatus.completed.value
    assert meeting["summary"] == "Only summary"


def test_empty_summary_is_not_retried() -> None:
    raw_text = _transcript_lines({"speaker_id": "user-1", "text": "Hi"})
    context = _build(raw_text=raw_text, replies=[""])
    job_id = _enqueue(context["jobs"])

    context["runner"].run_pending()

    assert context["jobs"].get_by_id(job_id)["status"] == JobStatus.failed.value
    assert context["meetings"].get_by_id("m1")["status"] == MeetingStatus.processing.value


def test_missing_transcript_is_not_retried() -> None:
    context = _build(
        raw_text="",
        replies=[],
        transcript_error=TranscriptFetchError("Transcript HTTP 404", retryable=False),
    )
    job_id = _enqueue(context["jobs"])

    context["runner"].run_pending()

    job = context["jobs"].get_by_id(job_id)
    assert job["status"] == JobStatus.failed.value
    assert context["completion"].calls == []


def test_malformed_transcript_line_is_retried() -> None:
    context = _build(raw_text='{"speaker_id": "user-1", "text": "Hi"}\nnot-json\n', replies=[])
    job_id = _enqueue(context["jobs"])

    context["runner"].run_pending()

    job = context["jobs"].get_by_id(job_id)
    assert job["status"] == JobStatus.pending.value
    assert "line 2" in job["last_error"]
    assert context["completion"].calls == []
