import pytest

from meetai.core.config import get_settings
from meetai.services.agent_store import clear_agent_store_cache
from meetai.services.job_store import clear_job_store_cache
from meetai.services.meeting_store import clear_meeting_store_cache
from meetai.services.stream_video_client import clear_stream_video_client_cache
from meetai.services.user_store import clear_user_store_cache

TEST_API_KEY = "test-video-api-key"
TEST_SECRET = "test-video-secret"


def _clear_caches() -> None:
    get_settings.cache_clear()
    clear_meeting_store_cache()
    clear_agent_store_cache()
    clear_user_store_cache()
    clear_job_store_cache()
    clear_stream_video_client_cache()


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DATA_STORE", "memory")
    monkeypatch.setenv("JOB_WORKER_ENABLED", "false")
    monkeypatch.setenv("STREAM_VIDEO_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("STREAM_VIDEO_SECRET_KEY", TEST_SECRET)
    monkeypatch.setenv("STREAM_CHAT_API_KEY", "")
    monkeypatch.setenv("STREAM_CHAT_SECRET_KEY", "")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    _clear_caches()
    yield
    _clear_caches()
