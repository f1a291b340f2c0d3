from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class WebhookEventType(StrEnum):
    call_session_started = "call.session_started"
    call_session_participant_left = "call.session_participant_left"
    call_session_ended = "call.session_ended"
    call_transcription_ready = "call.transcription_ready"
    call_recording_ready = "call.recording_ready"
    message_new = "message.new"


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str


class WebhookResponse(BaseModel):
    status: str = "ok"


class CallDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    cid: str | None = None
    custom: dict[str, Any] = Field(default_factory=dict)


class CallArtifact(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str | None = None


class _CallCustomEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    call: CallDetails = Field(default_factory=CallDetails)

    @property
    def meeting_id(self) -> str | None:
        value = self.call.custom.get("meetingId")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


class _CallCidEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    call_cid: str = ""

    @property
    def meeting_id(self) -> str | None:
        # call_cid is "<call type>:<call id>" and the call id is the meeting id.
        _, separator, call_id = self.call_cid.partition(":")
        if not separator:
            return None
        return call_id.strip() or None


class CallSessionStartedEvent(_CallCustomEvent):
    type: Literal["call.session_started"]


class CallSessionEndedEvent(_CallCustomEvent):
    type: Literal["call.session_ended"]


class CallSessionParticipantLeftEvent(_CallCidEvent):
    type: Literal["call.session_participant_left"]


class CallTranscriptionReadyEvent(_CallCidEvent):
    type: Literal["call.transcription_ready"]
    call_transcription: CallArtifact = Field(default_factory=CallArtifact)


class CallRecordingReadyEvent(_CallCidEvent):
    type: Literal["call.recording_ready"]
    call_recording: CallArtifact = Field(default_factory=CallArtifact)


class ChatUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str | None = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    text: str | None = None


class MessageNewEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["message.new"]
    user: ChatUser | None = None
    channel_id: str | None = None
    message: ChatMessage | None = None


WebhookEvent = Annotated[
    Union[
        CallSessionStartedEvent,
        CallSessionParticipantLeftEvent,
        CallSessionEndedEvent,
        CallTranscriptionReadyEvent,
        CallRecordingReadyEvent,
        MessageNewEvent,
    ],
    Field(discriminator="type"),
]

webhook_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)
