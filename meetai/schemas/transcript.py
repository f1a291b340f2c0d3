from pydantic import BaseModel, ConfigDict, Field


class TranscriptItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    speaker_id: str
    type: str | None = None
    text: str
    start_ts: float | None = None
    stop_ts: float | None = None


class TranscriptSpeaker(BaseModel):
    name: str


class EnrichedTranscriptItem(TranscriptItem):
    user: TranscriptSpeaker


class MeetingTranscriptResponse(BaseModel):
    meeting_id: str
    items: list[EnrichedTranscriptItem] = Field(default_factory=list)
