from typing import Any
from urllib import parse

from meetai.core.config import Settings
from meetai.services.stream_api_client import StreamApiClient, StreamApiError


class StreamChatClient(StreamApiClient):
    def __init__(
        self,
        api_url: str,
        api_key: str,
        secret_key: str,
        channel_type: str = "messaging",
        timeout_seconds: float = 10.0,
        user_agent: str = "MeetAiBackend/1.0",
    ) -> None:
        super().__init__(
            api_url=api_url,
            api_key=api_key,
            secret_key=secret_key,
            timeout_seconds=timeout_seconds,
            user_agent=user_agent,
        )
        self.channel_type = channel_type

    def get_channel_messages(self, channel_id: str, limit: int = 25) -> list[dict[str, Any]]:
        response = self._request(
            "POST",
            f"{self._channel_path(channel_id)}/query",
            {"state": True, "watch": False, "messages": {"limit": limit}},
        )
        messages = response.get("messages")
        if not isinstance(messages, list):
            raise StreamApiError("Stream Chat channel query response missing messages.")
        return [message for message in messages if isinstance(message, dict)]

    def upsert_user(self, *, user_id: str, name: str, image: str | None = None) -> None:
        user: dict[str, Any] = {"id": user_id, "name": name}
        if image:
            user["image"] = image
        self._request("POST", "/users", {"users": {user_id: user}})

    def send_message(self, *, channel_id: str, user_id: str, text: str) -> dict[str, Any]:
        response = self._request(
            "POST",
            f"{self._channel_path(channel_id)}/message",
            {"message": {"text": text, "user_id": user_id}},
        )
        message = response.get("message")
        return message if isinstance(message, dict) else {}

    def _channel_path(self, channel_id: str) -> str:
        return (
            f"/channels/{parse.quote(self.channel_type, safe='')}"
            f"/{parse.quote(channel_id, safe='')}"
        )


def create_stream_chat_client(settings: Settings) -> StreamChatClient:
    return StreamChatClient(
        api_url=settings.stream_chat_api_url,
        api_key=settings.stream_chat_api_key,
        secret_key=settings.stream_chat_secret_key,
        channel_type=settings.stream_chat_channel_type,
        timeout_seconds=settings.stream_api_timeout_seconds,
        user_agent=settings.stream_api_user_agent,
    )
