"""Guarded status transitions for meetings.

Every transition is a single conditional update on the meeting row
(``WHERE id = ? AND status IN (...)``). That predicate is the only
concurrency control: duplicate or reordered webhook deliveries either win
the update or find the row already sitting at the target state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from meetai.schemas.meeting import MeetingStatus
from meetai.services.agent_store import AgentStore
from meetai.services.job_runner import JobDispatcher
from meetai.services.meeting_store import MeetingStore
from meetai.services.stream_api_client import StreamApiError
from meetai.services.stream_video_client import StreamVideoClient

logger = logging.getLogger(__name__)

MEETINGS_PROCESSING_EVENT = "meetings/processing"


class MeetingNotFoundError(Exception):
    pass


class AgentNotFoundError(Exception):
    pass


class AgentConnectionError(Exception):
    pass


@dataclass(frozen=True)
class TransitionResult:
    meeting: dict[str, Any]
    applied: bool


class MeetingStateMachine:
    def __init__(
        self,
        meeting_store: MeetingStore,
        agent_store: AgentStore,
        video_client: StreamVideoClient,
        dispatcher: JobDispatcher,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.meeting_store = meeting_store
        self.agent_store = agent_store
        self.video_client = video_client
        self.dispatcher = dispatcher
        self._clock = clock or _utc_now

    def start(self, meeting_id: str) -> TransitionResult:
        meeting = self.meeting_store.get_by_id(meeting_id)
        if not meeting:
            raise MeetingNotFoundError(f"Meeting {meeting_id} not found.")
        agent = self.agent_store.get_by_id(str(meeting.get("agent_id")))
        if not agent:
            raise AgentNotFoundError(f"Agent {meeting.get('agent_id')} not found.")

        started_at = self._clock()
        result = self._transition(
            meeting_id,
            from_statuses=(MeetingStatus.upcoming,),
            target=MeetingStatus.active,
            updates={"status": MeetingStatus.active, "started_at": started_at},
        )
        if not result.applied:
            return result

        try:
            self.video_client.connect_agent(
                call_id=meeting_id,
                agent_user_id=str(agent["id"]),
                instructions=str(agent.get("instructions") or ""),
            )
        except StreamApiError as exc:
            # Undo only our own write so the provider's redelivery can start the meeting again.
            self.meeting_store.transition(
                meeting_id,
                from_statuses=(MeetingStatus.active,),
                updates={"status": MeetingStatus.upcoming, "started_at": None},
                conditions={"started_at": started_at},
            )
            logger.error(
                "Agent connection failed meeting_id=%s agent_id=%s error=%s",
                meeting_id,
                agent["id"],
                exc,
            )
            raise AgentConnectionError(f"Unable to connect agent to meeting {meeting_id}.") from exc

        logger.info("Meeting started meeting_id=%s agent_id=%s", meeting_id, agent["id"])
        return result

    def end(self, meeting_id: str) -> TransitionResult:
        result = self._transition(
            meeting_id,
            from_statuses=(MeetingStatus.active,),
            target=MeetingStatus.processing,
            updates={"status": MeetingStatus.processing, "ended_at": self._clock()},
        )
        if result.applied:
            logger.info("Meeting ended meeting_id=%s", meeting_id)
        return result

    def end_call(self, meeting_id: str) -> None:
        self.video_client.end_call(meeting_id)
        logger.info("Call end requested meeting_id=%s", meeting_id)

    def store_transcript(self, meeting_id: str, transcript_url: str) -> dict[str, Any]:
        meeting = self.meeting_store.update(meeting_id, {"transcript_url": transcript_url})
        if not meeting:
            raise MeetingNotFoundError(f"Meeting {meeting_id} not found.")

        self.dispatcher.send(
            MEETINGS_PROCESSING_EVENT,
            {"meetingId": meeting["id"], "transcriptUrl": meeting["transcript_url"]},
        )
        return meeting

    def store_recording(self, meeting_id: str, recording_url: str) -> dict[str, Any]:
        meeting = self.meeting_store.update(meeting_id, {"recording_url": recording_url})
        if not meeting:
            raise MeetingNotFoundError(f"Meeting {meeting_id} not found.")
        return meeting

    def _transition(
        self,
        meeting_id: str,
        *,
        from_statuses: Collection[MeetingStatus],
        target: MeetingStatus,
        updates: Mapping[str, Any],
    ) -> TransitionResult:
        updated = self.meeting_store.transition(
            meeting_id,
            from_statuses=from_statuses,
            updates=updates,
        )
        if updated:
            return TransitionResult(meeting=updated, applied=True)

        current = self.meeting_store.get_by_id(meeting_id)
        if not current:
            raise MeetingNotFoundError(f"Meeting {meeting_id} not found.")

        current_status = MeetingStatus(current["status"])
        # A replay finds the row already at the target. Any other state, terminal
        # ones included, is incompatible with the transition.
        if current_status == target:
            logger.info(
                "Meeting transition skipped meeting_id=%s status=%s target=%s",
                meeting_id,
                current_status.value,
                target.value,
            )
            return TransitionResult(meeting=current, applied=False)

        raise MeetingNotFoundError(
            f"Meeting {meeting_id} is {current_status.value}; cannot move to {target.value}.",
        )


def _utc_now() -> datetime:
    # MongoDB keeps milliseconds; trimming keeps equality guards on timestamps exact.
    now = datetime.now(UTC)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)
