"""Realtime AI participant sessions.

The agent joins a call through a WebSocket that Stream bridges to the
OpenAI realtime API. The socket has to stay open for as long as the agent
should take part in the call, so each session owns a daemon reader thread
that drains server events until the socket closes.
"""

import json
import logging
import threading
from collections.abc import Callable
from typing import Any

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import ClientConnection

from meetai.services.stream_api_client import StreamApiError

logger = logging.getLogger(__name__)


class AgentRealtimeSession:
    def __init__(
        self,
        connection: ClientConnection,
        *,
        call_id: str,
        agent_user_id: str,
        on_closed: Callable[["AgentRealtimeSession"], None] | None = None,
    ) -> None:
        self.call_id = call_id
        self.agent_user_id = agent_user_id
        self._connection = connection
        self._on_closed = on_closed
        self._reader: threading.Thread | None = None
        self._closed = threading.Event()
        self._close_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return not self._closed.is_set()

    def wait_until_ready(self, timeout: float) -> dict[str, Any]:
        try:
            event = _decode_event(self._connection.recv(timeout=timeout))
        except TimeoutError as exc:
            raise StreamApiError("Agent session did not open in time.") from exc
        except WebSocketException as exc:
            raise StreamApiError(f"Agent session closed during setup: {exc}") from exc

        if event.get("type") == "error":
            raise StreamApiError(f"Agent session rejected: {_error_message(event)}")
        return event

    def update_session(self, *, instructions: str) -> None:
        self._send({"type": "session.update", "session": {"instructions": instructions}})

    def start(self) -> None:
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"AgentSession-{self.call_id}",
            daemon=True,
        )
        self._reader.start()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._connection.close()
        if self._reader and self._reader is not threading.current_thread():
            self._reader.join(timeout=5.0)
        self._mark_closed()

    def _send(self, event: dict[str, Any]) -> None:
        try:
            self._connection.send(json.dumps(event))
        except WebSocketException as exc:
            raise StreamApiError(f"Agent session send failed: {exc}") from exc

    def _read_loop(self) -> None:
        try:
            for message in self._connection:
                event = _decode_event(message)
                if event.get("type") == "error":
                    logger.warning(
                        "Agent session error call_id=%s agent_id=%s error=%s",
                        self.call_id,
                        self.agent_user_id,
                        _error_message(event),
                    )
        except ConnectionClosed as exc:
            logger.warning("Agent session dropped call_id=%s reason=%s", self.call_id, exc)
        finally:
            self._mark_closed()

    def _mark_closed(self) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
        logger.info("Agent session closed call_id=%s agent_id=%s", self.call_id, self.agent_user_id)
        if self._on_closed:
            self._on_closed(self)


def _decode_event(message: str | bytes) -> dict[str, Any]:
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="ignore")
    try:
        event = json.loads(message)
    except json.JSONDecodeError:
        return {}
    return event if isinstance(event, dict) else {}


def _error_message(event: dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "unknown error")
    return str(error or "unknown error")
