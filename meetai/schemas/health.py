from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    timestamp: datetime
    processing_meetings: int | None = None
    failed_jobs: int | None = None
