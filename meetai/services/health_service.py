import logging
from datetime import UTC, datetime

from meetai.core.config import Settings, get_settings
from meetai.schemas.health import HealthResponse
from meetai.schemas.job import JobStatus
from meetai.schemas.meeting import MeetingStatus
from meetai.services.job_store import JobStore, create_job_store
from meetai.services.meeting_store import MeetingStore, create_meeting_store

logger = logging.getLogger(__name__)


class HealthService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        job_store: JobStore | None = None,
    ) -> None:
        self.settings = settings
        self._meeting_store = meeting_store
        self._job_store = job_store

    def get_status(self) -> HealthResponse:
        processing_meetings: int | None = None
        failed_jobs: int | None = None
        try:
            meeting_store = self._meeting_store or create_meeting_store(self.settings)
            job_store = self._job_store or create_job_store(self.settings)
            processing_meetings = meeting_store.count_by_status(MeetingStatus.processing)
            failed_jobs = job_store.count_by_status(JobStatus.failed)
        except Exception:
            logger.exception("Health counters unavailable")

        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            timestamp=datetime.now(UTC),
            processing_meetings=processing_meetings,
            failed_jobs=failed_jobs,
        )


def get_health_service() -> HealthService:
    return HealthService(get_settings())
