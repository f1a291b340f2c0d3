from collections.abc import Mapping
from typing import Any

from fastapi import HTTPException, status

from meetai.core.config import Settings
from meetai.schemas.meeting import MeetingRecord
from meetai.schemas.transcript import MeetingTranscriptResponse
from meetai.services.agent_store import create_agent_store
from meetai.services.meeting_store import MeetingStore, create_meeting_store
from meetai.services.transcript_client import (
    TranscriptClient,
    TranscriptFetchError,
    create_transcript_client,
)
from meetai.services.transcript_enrichment import (
    SpeakerResolver,
    TranscriptParseError,
    parse_transcript,
)
from meetai.services.user_store import create_user_store


class MeetingService:
    def __init__(
        self,
        settings: Settings,
        store: MeetingStore | None = None,
        transcript_client: TranscriptClient | None = None,
        speaker_resolver: SpeakerResolver | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_meeting_store(settings)
        self.transcript_client = transcript_client or create_transcript_client(settings)
        self.speaker_resolver = speaker_resolver or SpeakerResolver(
            user_store=create_user_store(settings),
            agent_store=create_agent_store(settings),
        )

    def get_meeting(self, meeting_id: str) -> MeetingRecord:
        return self._map_record(self._get_meeting_or_404(meeting_id))

    def get_transcript(self, meeting_id: str) -> MeetingTranscriptResponse:
        meeting = self._get_meeting_or_404(meeting_id)
        transcript_url = meeting.get("transcript_url")
        if not transcript_url:
            return MeetingTranscriptResponse(meeting_id=meeting_id, items=[])

        try:
            raw_text = self.transcript_client.fetch_text(str(transcript_url))
            items = parse_transcript(raw_text)
        except (TranscriptFetchError, TranscriptParseError) as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"Unable to load transcript: {exc}",
            ) from exc

        return MeetingTranscriptResponse(
            meeting_id=meeting_id,
            items=self.speaker_resolver.enrich(items),
        )

    def _get_meeting_or_404(self, meeting_id: str) -> dict[str, Any]:
        meeting = self.store.get_by_id(meeting_id)
        if not meeting:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Meeting not found.",
            )
        return meeting

    def _map_record(self, record: Mapping[str, Any]) -> MeetingRecord:
        started_at = record.get("started_at")
        ended_at = record.get("ended_at")
        duration_seconds = None
        if started_at and ended_at:
            duration_seconds = max((ended_at - started_at).total_seconds(), 0.0)
        return MeetingRecord.model_validate({**record, "duration_seconds": duration_seconds})
