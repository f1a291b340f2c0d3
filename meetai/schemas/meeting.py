from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class MeetingStatus(StrEnum):
    upcoming = "upcoming"
    active = "active"
    processing = "processing"
    completed = "completed"
    cancelled = "cancelled"


class MeetingRecord(BaseModel):
    id: str
    name: str
    agent_id: str
    user_id: str
    status: MeetingStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    transcript_url: str | None = None
    recording_url: str | None = None
    summary: str | None = None
    duration_seconds: float | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
