import json
from collections.abc import Sequence

from pydantic import ValidationError

from meetai.schemas.transcript import EnrichedTranscriptItem, TranscriptItem, TranscriptSpeaker
from meetai.services.agent_store import AgentStore
from meetai.services.user_store import UserStore

UNKNOWN_SPEAKER_NAME = "Unknown"


class TranscriptParseError(Exception):
    pass


def parse_transcript(raw_text: str) -> list[TranscriptItem]:
    """Decode newline-delimited JSON records; blank lines are skipped."""
    items: list[TranscriptItem] = []
    for line_number, line in enumerate(raw_text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            parsed_line = json.loads(line)
        except json.JSONDecodeError as exc:
            raise TranscriptParseError(f"Transcript line {line_number} is not valid JSON.") from exc
        if not isinstance(parsed_line, dict):
            raise TranscriptParseError(f"Transcript line {line_number} is not a JSON object.")
        try:
            items.append(TranscriptItem.model_validate(parsed_line))
        except ValidationError as exc:
            raise TranscriptParseError(
                f"Transcript line {line_number} is missing required fields.",
            ) from exc
    return items


class SpeakerResolver:
    def __init__(self, user_store: UserStore, agent_store: AgentStore) -> None:
        self.user_store = user_store
        self.agent_store = agent_store

    def resolve_names(self, speaker_ids: Sequence[str]) -> dict[str, str]:
        distinct_ids = sorted(set(speaker_ids))
        if not distinct_ids:
            return {}

        names: dict[str, str] = {}
        for record in self.user_store.get_users_by_ids(distinct_ids):
            names[str(record["id"])] = str(record.get("name") or UNKNOWN_SPEAKER_NAME)
        for record in self.agent_store.get_many_by_ids(distinct_ids):
            names.setdefault(str(record["id"]), str(record.get("name") or UNKNOWN_SPEAKER_NAME))
        return names

    def enrich(self, items: Sequence[TranscriptItem]) -> list[EnrichedTranscriptItem]:
        names = self.resolve_names([item.speaker_id for item in items])
        enriched_items: list[EnrichedTranscriptItem] = []
        for item in items:
            fields = item.model_dump()
            fields["user"] = TranscriptSpeaker(name=names.get(item.speaker_id, UNKNOWN_SPEAKER_NAME))
            enriched_items.append(EnrichedTranscriptItem(**fields))
        return enriched_items
