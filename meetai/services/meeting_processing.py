import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from meetai.core.config import Settings
from meetai.schemas.meeting import MeetingStatus
from meetai.schemas.transcript import TranscriptItem
from meetai.services.agent_store import create_agent_store
from meetai.services.job_runner import JobRunner, JobStep, NonRetriableJobError
from meetai.services.job_store import JobStore, create_job_store
from meetai.services.meeting_state_machine import MEETINGS_PROCESSING_EVENT
from meetai.services.meeting_store import MeetingStore, create_meeting_store
from meetai.services.openai_completion_client import (
    OpenAiCompletionClient,
    OpenAiCompletionError,
    create_openai_completion_client,
)
from meetai.services.transcript_client import (
    TranscriptClient,
    TranscriptFetchError,
    create_transcript_client,
)
from meetai.services.transcript_enrichment import SpeakerResolver, parse_transcript
from meetai.services.user_store import create_user_store

logger = logging.getLogger(__name__)

SUMMARIZER_SYSTEM_PROMPT = """
You are an expert summarizer. You write readable, concise, simple content. You are given a transcript of a meeting and you need to summarize it.

Use the following markdown structure for every output:

### Overview
Provide a detailed, engaging summary of the session's content. Focus on major features, user workflows, and any key takeaways. Write in a narrative style, using full sentences. Highlight unique or powerful aspects of the product, platform, or discussion.

### Notes
Break down key content into thematic sections with timestamp ranges. Each section should summarize key points, actions, or demos in bullet format.

Example:
#### Section Name
- Main point or demo shown here
- Another key insight or interaction
- Follow-up tool or explanation provided

#### Next Section
- Feature X automatically does Y
- Mention of integration with Z
""".strip()


class MeetingProcessingPipeline:
    """Fetch, parse, speaker-enrich, summarize and persist one meeting transcript."""

    def __init__(
        self,
        meeting_store: MeetingStore,
        transcript_client: TranscriptClient,
        speaker_resolver: SpeakerResolver,
        completion_client: OpenAiCompletionClient,
    ) -> None:
        self.meeting_store = meeting_store
        self.transcript_client = transcript_client
        self.speaker_resolver = speaker_resolver
        self.completion_client = completion_client

    def __call__(self, payload: Mapping[str, Any], step: JobStep) -> None:
        meeting_id = payload.get("meetingId")
        transcript_url = payload.get("transcriptUrl")
        if not isinstance(meeting_id, str) or not meeting_id:
            raise NonRetriableJobError("Job payload missing meetingId.")
        if not isinstance(transcript_url, str) or not transcript_url:
            raise NonRetriableJobError("Job payload missing transcriptUrl.")

        raw_text = step.run("fetch-transcript", lambda: self._fetch_transcript(transcript_url))
        transcript = step.run(
            "parse-transcript",
            lambda: [item.model_dump() for item in parse_transcript(raw_text)],
        )
        transcript_with_speakers = step.run(
            "add-speakers",
            lambda: self._add_speakers(transcript),
        )
        summary = step.run("summarize", lambda: self._summarize(transcript_with_speakers))
        step.run("save-summary", lambda: self._save_summary(meeting_id, summary))

    def _fetch_transcript(self, transcript_url: str) -> str:
        try:
            return self.transcript_client.fetch_text(transcript_url)
        except TranscriptFetchError as exc:
            if not exc.retryable:
                raise NonRetriableJobError(str(exc)) from exc
            raise

    def _add_speakers(self, transcript: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        items = [TranscriptItem.model_validate(item) for item in transcript]
        return [item.model_dump() for item in self.speaker_resolver.enrich(items)]

    def _summarize(self, transcript_with_speakers: Sequence[Mapping[str, Any]]) -> str:
        prompt = "Summarize the following transcript: " + json.dumps(
            list(transcript_with_speakers),
            ensure_ascii=False,
        )
        try:
            summary = self.completion_client.complete(
                [
                    {"role": "system", "content": SUMMARIZER_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except OpenAiCompletionError as exc:
            if not exc.retryable:
                raise NonRetriableJobError(f"Summarization failed: {exc}") from exc
            raise

        if not summary:
            raise NonRetriableJobError("Summarization returned an empty response.")
        return summary

    def _save_summary(self, meeting_id: str, summary: str) -> str:
        meeting = self.meeting_store.update(
            meeting_id,
            {"summary": summary, "status": MeetingStatus.completed},
        )
        if not meeting:
            raise NonRetriableJobError(f"Meeting {meeting_id} not found.")
        logger.info("Meeting completed meeting_id=%s", meeting_id)
        return str(meeting["status"])


def create_meeting_processing_pipeline(settings: Settings) -> MeetingProcessingPipeline:
    return MeetingProcessingPipeline(
        meeting_store=create_meeting_store(settings),
        transcript_client=create_transcript_client(settings),
        speaker_resolver=SpeakerResolver(
            user_store=create_user_store(settings),
            agent_store=create_agent_store(settings),
        ),
        completion_client=create_openai_completion_client(settings),
    )


def create_job_runner(
    settings: Settings,
    store: JobStore | None = None,
    pipeline: MeetingProcessingPipeline | None = None,
) -> JobRunner:
    runner = JobRunner(
        store or create_job_store(settings),
        retry_backoff_seconds=settings.job_retry_backoff_seconds,
        lease_seconds=settings.job_lease_seconds,
    )
    runner.register(MEETINGS_PROCESSING_EVENT, pipeline or create_meeting_processing_pipeline(settings))
    return runner
