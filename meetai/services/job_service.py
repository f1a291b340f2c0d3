from fastapi import HTTPException, status

from meetai.core.config import Settings
from meetai.schemas.job import JobRecord, JobRecordsResponse, JobStatus
from meetai.services.job_store import JobStore, create_job_store


class JobService:
    def __init__(self, settings: Settings, store: JobStore | None = None) -> None:
        self.settings = settings
        self.store = store or create_job_store(settings)

    def list_jobs(self, status_filter: JobStatus | None = None, limit: int = 50) -> JobRecordsResponse:
        bounded_limit = min(max(limit, 1), 200)
        try:
            records = self.store.list_jobs(status=status_filter, limit=bounded_limit)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query job storage.",
            ) from exc
        return JobRecordsResponse(items=[JobRecord.model_validate(record) for record in records])
