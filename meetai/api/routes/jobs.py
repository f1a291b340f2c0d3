from fastapi import APIRouter

from meetai.core.config import get_settings
from meetai.schemas.job import JobRecordsResponse, JobStatus
from meetai.services.job_service import JobService

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=JobRecordsResponse)
def list_jobs(status: JobStatus | None = None, limit: int = 50) -> JobRecordsResponse:
    service = JobService(get_settings())
    return service.list_jobs(status_filter=status, limit=limit)
