import logging
import threading
import time
from functools import lru_cache
from urllib import parse

import jwt
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from meetai.core.config import Settings
from meetai.services.stream_agent_session import AgentRealtimeSession
from meetai.services.stream_api_client import StreamApiClient, StreamApiError

logger = logging.getLogger(__name__)


def create_user_token(secret: str, user_id: str, validity_seconds: int) -> str:
    issued_at = int(time.time())
    return jwt.encode(
        {"user_id": user_id, "iat": issued_at, "exp": issued_at + validity_seconds},
        secret,
        algorithm="HS256",
    )


class StreamVideoClient(StreamApiClient):
    def __init__(
        self,
        api_url: str,
        api_key: str,
        secret_key: str,
        call_type: str = "default",
        agent_connect_path: str = "/video/connect_agent",
        agent_token_validity_seconds: int = 3600,
        openai_api_key: str = "",
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
        self.call_type = call_type
        self.agent_connect_path = agent_connect_path
        self.agent_token_validity_seconds = agent_token_validity_seconds
        self.openai_api_key = openai_api_key
        self._sessions: dict[str, AgentRealtimeSession] = {}
        self._sessions_lock = threading.Lock()

    def end_call(self, call_id: str) -> None:
        try:
            self._request("POST", f"{self._call_path(call_id)}/mark_ended", {})
        finally:
            self._close_session(call_id)

    def connect_agent(self, *, call_id: str, agent_user_id: str, instructions: str) -> AgentRealtimeSession:
        """Join the agent to the call and apply its instructions.

        The returned session stays open until ``end_call`` or
        ``close_agent_sessions``, or until the provider drops the socket.
        """
        if not self.api_key or not self.secret_key:
            raise StreamApiError("Stream API credentials are not configured.")
        if not self.openai_api_key:
            raise StreamApiError("OpenAI API key is not configured.")

        token = create_user_token(self.secret_key, agent_user_id, self.agent_token_validity_seconds)
        try:
            connection = connect(
                self._agent_connect_url(call_id),
                additional_headers={
                    "Authorization": token,
                    "Stream-Auth-Type": "jwt",
                    "OpenAI-Api-Key": self.openai_api_key,
                },
                user_agent_header=self.user_agent,
                open_timeout=self.timeout_seconds,
            )
        except (WebSocketException, OSError) as exc:
            raise StreamApiError(f"Agent connection failed: {exc}") from exc

        session = AgentRealtimeSession(
            connection,
            call_id=call_id,
            agent_user_id=agent_user_id,
            on_closed=self._forget_session,
        )
        try:
            session.wait_until_ready(timeout=self.timeout_seconds)
            session.update_session(instructions=instructions)
        except StreamApiError:
            session.close()
            raise

        with self._sessions_lock:
            previous = self._sessions.get(call_id)
            self._sessions[call_id] = session
        if previous:
            previous.close()
        session.start()
        logger.info("Agent session opened call_id=%s agent_id=%s", call_id, agent_user_id)
        return session

    def get_agent_session(self, call_id: str) -> AgentRealtimeSession | None:
        with self._sessions_lock:
            return self._sessions.get(call_id)

    def close_agent_sessions(self) -> None:
        with self._sessions_lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.close()

    def _close_session(self, call_id: str) -> None:
        with self._sessions_lock:
            session = self._sessions.pop(call_id, None)
        if session:
            session.close()

    def _forget_session(self, session: AgentRealtimeSession) -> None:
        with self._sessions_lock:
            if self._sessions.get(session.call_id) is session:
                del self._sessions[session.call_id]

    def _agent_connect_url(self, call_id: str) -> str:
        scheme, _, host = self.api_url.partition("://")
        ws_scheme = "ws" if scheme == "http" else "wss"
        query = parse.urlencode(
            {"call_type": self.call_type, "call_id": call_id, "api_key": self.api_key},
        )
        return f"{ws_scheme}://{host}{self.agent_connect_path}?{query}"

    def _call_path(self, call_id: str) -> str:
        return (
            f"/video/call/{parse.quote(self.call_type, safe='')}"
            f"/{parse.quote(call_id, safe='')}"
        )


def create_stream_video_client(settings: Settings) -> StreamVideoClient:
    return _create_stream_video_client_cached(
        api_url=settings.stream_video_api_url,
        api_key=settings.stream_video_api_key,
        secret_key=settings.stream_video_secret_key,
        call_type=settings.stream_video_call_type,
        agent_connect_path=settings.stream_video_agent_connect_path,
        agent_token_validity_seconds=settings.stream_video_agent_token_validity_seconds,
        openai_api_key=settings.openai_api_key,
        timeout_seconds=settings.stream_api_timeout_seconds,
        user_agent=settings.stream_api_user_agent,
    )


# One client per configuration; it owns the open agent sessions.
@lru_cache
def _create_stream_video_client_cached(
    api_url: str,
    api_key: str,
    secret_key: str,
    call_type: str,
    agent_connect_path: str,
    agent_token_validity_seconds: int,
    openai_api_key: str,
    timeout_seconds: float,
    user_agent: str,
) -> StreamVideoClient:
    return StreamVideoClient(
        api_url=api_url,
        api_key=api_key,
        secret_key=secret_key,
        call_type=call_type,
        agent_connect_path=agent_connect_path,
        agent_token_validity_seconds=agent_token_validity_seconds,
        openai_api_key=openai_api_key,
        timeout_seconds=timeout_seconds,
        user_agent=user_agent,
    )


def clear_stream_video_client_cache() -> None:
    _create_stream_video_client_cached.cache_clear()
