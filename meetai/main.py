import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meetai.api.router import api_router
from meetai.core.config import get_settings
from meetai.services.job_runner import JobWorker
from meetai.services.meeting_processing import create_job_runner
from meetai.services.stream_video_client import create_stream_video_client


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_application() -> FastAPI:
    _configure_logging()
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    app.state.job_worker = None
    app.add_event_handler("startup", lambda: _start_job_worker(app))
    app.add_event_handler("shutdown", lambda: _stop_job_worker(app))
    app.add_event_handler("shutdown", _close_agent_sessions)

    return app


def _start_job_worker(app: FastAPI) -> None:
    settings = get_settings()
    if not settings.job_worker_enabled:
        logger.info("Job worker disabled")
        return
    logger.info("Starting job worker")
    worker = JobWorker(
        create_job_runner(settings),
        poll_interval_seconds=settings.job_worker_poll_interval_seconds,
    )
    worker.start()
    app.state.job_worker = worker


def _stop_job_worker(app: FastAPI) -> None:
    worker = app.state.job_worker
    if worker is None:
        return
    worker.stop()
    app.state.job_worker = None


def _close_agent_sessions() -> None:
    create_stream_video_client(get_settings()).close_agent_sessions()


app = create_application()
