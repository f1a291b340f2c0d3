from fastapi import APIRouter

from meetai.core.config import get_settings
from meetai.schemas.meeting import MeetingRecord
from meetai.schemas.transcript import MeetingTranscriptResponse
from meetai.services.meeting_service import MeetingService

router = APIRouter(prefix="/meetings", tags=["meetings"])


@router.get("/{meeting_id}", response_model=MeetingRecord)
def get_meeting(meeting_id: str) -> MeetingRecord:
    service = MeetingService(get_settings())
    return service.get_meeting(meeting_id)


@router.get("/{meeting_id}/transcript", response_model=MeetingTranscriptResponse)
def get_meeting_transcript(meeting_id: str) -> MeetingTranscriptResponse:
    service = MeetingService(get_settings())
    return service.get_transcript(meeting_id)
