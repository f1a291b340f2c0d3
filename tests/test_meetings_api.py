import json
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from meetai.core.config import get_settings
from meetai.main import app
from meetai.schemas.meeting import MeetingStatus
from meetai.services.agent_store import create_agent_store
from meetai.services.meeting_store import create_meeting_store
from meetai.services.user_store import create_user_store

client = TestClient(app)

TRANSCRIPT_URL = "https://cdn.example.com/m1.jsonl"


class _FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _seed_completed_meeting() -> None:
    settings = get_settings()
    create_user_store(settings).create_user(user_id="user-1", name="Ana Ruiz", email="ana@example.com")
    create_agent_store(settings).create_agent(
        agent_id="agent-1",
        name="Interview Coach",
        instructions="Be brief.",
        user_id="user-1",
    )
    store = create_meeting_store(settings)
    store.create_meeting(
        meeting_id="m1",
        name="Weekly sync",
        agent_id="agent-1",
        user_id="user-1",
        status=MeetingStatus.completed,
    )
    started_at = datetime(2025, 3, 1, 10, 0, tzinfo=UTC)
    store.update(
        "m1",
        {
            "started_at": started_at,
            "ended_at": started_at + timedelta(minutes=30),
            "transcript_url": TRANSCRIPT_URL,
            "summary": "### Overview\nShip Friday.",
        },
    )


def test_get_meeting_returns_record_with_duration() -> None:
    _seed_completed_meeting()

    response = client.get("/api/meetings/m1")

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == "m1"
    assert data["status"] == "completed"
    assert data["summary"] == "### Overview\nShip Friday."
    assert data["duration_seconds"] == 1800.0


def test_get_meeting_returns_404_for_unknown_meeting() -> None:
    response = client.get("/api/meetings/missing")

    assert response.status_code == 404


def test_get_transcript_enriches_speakers(monkeypatch: pytest.MonkeyPatch) -> None:
    _seed_completed_meeting()
    raw_text = "\n".join(
        [
            json.dumps({"speaker_id": "user-1", "type": "speech", "text": "Hello", "start_ts": 0, "stop_ts": 900}),
            "",
            json.dumps({"speaker_id": "agent-1", "type": "speech", "text": "Hi", "start_ts": 950, "stop_ts": 1200}),
            json.dumps({"speaker_id": "guest", "type": "speech", "text": "Hey", "start_ts": 1300, "stop_ts": 1500}),
        ],
    )
    requested_urls: list[str] = []

    def fake_urlopen(req, timeout: float) -> _FakeResponse:
        requested_urls.append(req.full_url)
        return _FakeResponse(raw_text.encode("utf-8"))

    monkeypatch.setattr("meetai.services.transcript_client.request.urlopen", fake_urlopen)

    response = client.get("/api/meetings/m1/transcript")

    assert response.status_code == 200
    items = response.json()["items"]
    assert requested_urls == [TRANSCRIPT_URL]
    assert [item["user"]["name"] for item in items] == ["Ana Ruiz", "Interview Coach", "Unknown"]
    assert items[0]["text"] == "Hello"


def test_get_transcript_is_empty_without_transcript_url() -> None:
    create_meeting_store(get_settings()).create_meeting(
        meeting_id="m2",
        name="Planning",
        agent_id="agent-1",
        user_id="user-1",
    )

    response = client.get("/api/meetings/m2/transcript")

    assert response.status_code == 200
    assert response.json() == {"meeting_id": "m2", "items": []}


def test_get_transcript_returns_502_for_malformed_transcript(monkeypatch: pytest.MonkeyPatch) -> None:
    _seed_completed_meeting()
    monkeypatch.setattr(
        "meetai.services.transcript_client.request.urlopen",
        lambda *args, **kwargs: _FakeResponse(b"not-json\n"),
    )

    response = client.get("/api/meetings/m1/transcript")

    assert response.status_code == 502
