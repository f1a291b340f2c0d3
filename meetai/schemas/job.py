from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class JobStatus(StrEnum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class JobRecord(BaseModel):
    id: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    attempts: int = 0
    max_attempts: int
    last_error: str | None = None
    available_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobRecordsResponse(BaseModel):
    items: list[JobRecord]
