from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Meet AI Webhooks API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    stream_video_api_key: str = ""
    stream_video_secret_key: str = ""
    stream_video_api_url: str = "https://video.stream-io-api.com"
    stream_video_call_type: str = "default"
    stream_video_agent_connect_path: str = "/video/connect_agent"
    stream_video_agent_token_validity_seconds: int = 3600
    stream_chat_api_key: str = ""
    stream_chat_secret_key: str = ""
    stream_chat_api_url: str = "https://chat.stream-io-api.com"
    stream_chat_channel_type: str = "messaging"
    stream_api_timeout_seconds: float = 10.0
    stream_api_user_agent: str = "MeetAiBackend/1.0"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_api_url: str = "https://api.openai.com/v1"
    openai_api_timeout_seconds: float = 60.0
    openai_max_attempts: int = 3
    transcript_fetch_timeout_seconds: float = 15.0
    data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meet_ai"
    mongodb_meetings_collection: str = "meetings"
    mongodb_agents_collection: str = "agents"
    mongodb_users_collection: str = "users"
    mongodb_jobs_collection: str = "jobs"
    mongodb_job_steps_collection: str = "job_steps"
    mongodb_connect_timeout_ms: int = 2000
    job_max_attempts: int = 4
    job_retry_backoff_seconds: float = 5.0
    job_worker_enabled: bool = True
    job_worker_poll_interval_seconds: float = 2.0
    job_lease_seconds: float = 900.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def webhook_signing_secrets(self) -> list[str]:
        secrets: list[str] = []
        for secret in (self.stream_video_secret_key, self.stream_chat_secret_key):
            if secret and secret not in secrets:
                secrets.append(secret)
        return secrets

    @property
    def webhook_api_keys(self) -> list[str]:
        return [key for key in (self.stream_video_api_key, self.stream_chat_api_key) if key]

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("data_store", mode="before")
    @classmethod
    def normalize_data_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("stream_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_stream_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("openai_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_openai_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 60.0
        return parsed_value

    @field_validator("transcript_fetch_timeout_seconds", mode="before")
    @classmethod
    def normalize_transcript_fetch_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 15.0
        return parsed_value

    @field_validator("job_max_attempts", "openai_max_attempts", mode="before")
    @classmethod
    def normalize_attempts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 1
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
