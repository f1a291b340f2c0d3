import json
import logging
from collections.abc import Callable
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError

from meetai.core.config import Settings, get_settings
from meetai.schemas.webhook import (
    CallRecordingReadyEvent,
    CallSessionEndedEvent,
    CallSessionParticipantLeftEvent,
    CallSessionStartedEvent,
    CallTranscriptionReadyEvent,
    MessageNewEvent,
    WebhookEnvelope,
    WebhookEventType,
    WebhookResponse,
    webhook_event_adapter,
)
from meetai.services.agent_store import AgentStore, create_agent_store
from meetai.services.chat_reply_service import ChatReplyService, EmptyCompletionError
from meetai.services.job_runner import JobDispatcher
from meetai.services.job_store import create_job_store
from meetai.services.meeting_state_machine import (
    AgentConnectionError,
    AgentNotFoundError,
    MeetingNotFoundError,
    MeetingStateMachine,
)
from meetai.services.meeting_store import MeetingStore, create_meeting_store
from meetai.services.openai_completion_client import (
    OpenAiCompletionClient,
    OpenAiCompletionError,
    create_openai_completion_client,
)
from meetai.services.security_utils import verify_webhook_signature
from meetai.services.stream_api_client import StreamApiError
from meetai.services.stream_chat_client import StreamChatClient, create_stream_chat_client
from meetai.services.stream_video_client import StreamVideoClient, create_stream_video_client

logger = logging.getLogger(__name__)


class WebhookService:
    def __init__(
        self,
        settings: Settings,
        meeting_store: MeetingStore | None = None,
        agent_store: AgentStore | None = None,
        video_client: StreamVideoClient | None = None,
        chat_client: StreamChatClient | None = None,
        completion_client: OpenAiCompletionClient | None = None,
        dispatcher: JobDispatcher | None = None,
    ) -> None:
        self.settings = settings
        self.meeting_store = meeting_store or create_meeting_store(settings)
        self.agent_store = agent_store or create_agent_store(settings)
        self.dispatcher = dispatcher or JobDispatcher(
            create_job_store(settings),
            max_attempts=settings.job_max_attempts,
        )
        self.state_machine = MeetingStateMachine(
            meeting_store=self.meeting_store,
            agent_store=self.agent_store,
            video_client=video_client or create_stream_video_client(settings),
            dispatcher=self.dispatcher,
        )
        self.chat_reply_service = ChatReplyService(
            meeting_store=self.meeting_store,
            agent_store=self.agent_store,
            chat_client=chat_client or create_stream_chat_client(settings),
            completion_client=completion_client or create_openai_completion_client(settings),
        )
        self._handlers: dict[WebhookEventType, Callable[[Any], None]] = {
            WebhookEventType.call_session_started: self._handle_session_started,
            WebhookEventType.call_session_participant_left: self._handle_participant_left,
            WebhookEventType.call_session_ended: self._handle_session_ended,
            WebhookEventType.call_transcription_ready: self._handle_transcription_ready,
            WebhookEventType.call_recording_ready: self._handle_recording_ready,
            WebhookEventType.message_new: self._handle_message_new,
        }
        missing_handlers = set(WebhookEventType) - set(self._handlers)
        if missing_handlers:
            raise RuntimeError(f"Webhook handlers missing for: {sorted(missing_handlers)}")

    def process_webhook(
        self,
        *,
        raw_body: bytes,
        signature: str | None,
        api_key: str | None,
    ) -> WebhookResponse:
        if not signature or not api_key:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing signature or API key.",
            )
        self._validate_auth(raw_body=raw_body, signature=signature, api_key=api_key)

        payload = self._parse_payload(raw_body)
        try:
            envelope = WebhookEnvelope.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Webhook payload must include a string type.",
            ) from exc

        try:
            event_type = WebhookEventType(envelope.type)
        except ValueError:
            logger.info("Webhook ignored type=%s", envelope.type)
            return WebhookResponse()

        try:
            event = webhook_event_adapter.validate_python(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid {event_type.value} payload.",
            ) from exc

        try:
            self._handlers[event_type](event)
        except (MeetingNotFoundError, AgentNotFoundError) as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except EmptyCompletionError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except (AgentConnectionError, StreamApiError, OpenAiCompletionError) as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

        return WebhookResponse()

    def _validate_auth(self, *, raw_body: bytes, signature: str, api_key: str) -> None:
        allowed_api_keys = self.settings.webhook_api_keys
        if allowed_api_keys and api_key.strip() not in allowed_api_keys:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unknown API key.",
            )
        if not verify_webhook_signature(raw_body, signature, self.settings.webhook_signing_secrets):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature.",
            )

    def _parse_payload(self, raw_body: bytes) -> dict[str, Any]:
        try:
            parsed_payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid JSON.",
            ) from exc

        if not isinstance(parsed_payload, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Request body must be a JSON object.",
            )
        return parsed_payload

    def _handle_session_started(self, event: CallSessionStartedEvent) -> None:
        self.state_machine.start(self._require_meeting_id(event.meeting_id))

    def _handle_participant_left(self, event: CallSessionParticipantLeftEvent) -> None:
        self.state_machine.end_call(self._require_meeting_id(event.meeting_id))

    def _handle_session_ended(self, event: CallSessionEndedEvent) -> None:
        self.state_machine.end(self._require_meeting_id(event.meeting_id))

    def _handle_transcription_ready(self, event: CallTranscriptionReadyEvent) -> None:
        meeting_id = self._require_meeting_id(event.meeting_id)
        transcript_url = self._require_field(event.call_transcription.url, "call_transcription.url")
        self.state_machine.store_transcript(meeting_id, transcript_url)

    def _handle_recording_ready(self, event: CallRecordingReadyEvent) -> None:
        meeting_id = self._require_meeting_id(event.meeting_id)
        recording_url = self._require_field(event.call_recording.url, "call_recording.url")
        self.state_machine.store_recording(meeting_id, recording_url)

    def _handle_message_new(self, event: MessageNewEvent) -> None:
        user_id = event.user.id if event.user else None
        text = event.message.text if event.message else None
        if not user_id or not event.channel_id or not (text or "").strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing required fields.",
            )
        self.chat_reply_service.reply(
            user_id=user_id,
            channel_id=event.channel_id,
            text=text,
            message_id=event.message.id if event.message else None,
        )

    def _require_meeting_id(self, meeting_id: str | None) -> str:
        return self._require_field(meeting_id, "meetingId")

    def _require_field(self, value: str | None, field_name: str) -> str:
        if not value or not value.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Missing {field_name}.",
            )
        return value.strip()


def get_webhook_service() -> WebhookService:
    return WebhookService(get_settings())
