import io
import json
from http.client import RemoteDisconnected
from urllib import error

import pytest

from meetai.services.openai_completion_client import OpenAiCompletionClient, OpenAiCompletionError


class _FakeResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _completion_payload(content: object) -> dict[str, object]:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


def _http_error(code: int, body: str = "") -> error.HTTPError:
    return error.HTTPError(
        url="https://api.openai.com/v1/chat/completions",
        code=code,
        msg="error",
        hdrs=None,
        fp=io.BytesIO(body.encode("utf-8")),
    )


def _build_client() -> OpenAiCompletionClient:
    return OpenAiCompletionClient(api_key="fake-api-key", model="gpt-4o", timeout_seconds=0.1)


def test_complete_sends_messages_and_returns_stripped_text(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, timeout: float) -> _FakeResponse:
        captured["url"] = req.full_url
        captured["authorization"] = req.get_header("Authorization")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse(_completion_payload("  ### Overview\nAll good.  "))

    monkeypatch.setattr("meetai.services.openai_completion_client.request.urlopen", fake_urlopen)

    text = _build_client().complete([{"role": "user", "content": "Summarize"}])

    assert text == "### Overview\nAll good."
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["authorization"] == "Bearer fake-api-key"
    assert captured["body"] == {
        "model": "gpt-4o",
        "messages": [{"role": "user", "content": "Summarize"}],
    }
    assert captured["timeout"] == 0.1


def test_complete_retries_timeout_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError("request timed out")
        return _FakeResponse(_completion_payload("Done"))

    monkeypatch.setattr("meetai.services.openai_completion_client.sleep", lambda _: None)
    monkeypatch.setattr("meetai.services.openai_completion_client.request.urlopen", fake_urlopen)

    assert _build_client().complete([{"role": "user", "content": "Hi"}]) == "Done"
    assert calls["count"] == 3


def test_complete_fails_after_retries_on_remote_disconnect(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        raise RemoteDisconnected("closed")

    monkeypatch.setattr("meetai.services.openai_completion_client.sleep", lambda _: None)
    monkeypatch.setattr("meetai.services.openai_completion_client.request.urlopen", fake_urlopen)

    with pytest.raises(OpenAiCompletionError, match="closed before sending a response") as exc_info:
        _build_client().complete([{"role": "user", "content": "Hi"}])

    assert exc_info.value.retryable is True
    assert calls["count"] == 3


def test_complete_does_not_retry_client_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        raise _http_error(400, '{"error":{"message":"bad model"}}')

    monkeypatch.setattr("meetai.services.openai_completion_client.sleep", lambda _: None)
    monkeypatch.setattr("meetai.services.openai_completion_client.request.urlopen", fake_urlopen)

    with pytest.raises(OpenAiCompletionError, match="HTTP 400") as exc_info:
        _build_client().complete([{"role": "user", "content": "Hi"}])

    assert exc_info.value.retryable is False
    assert calls["count"] == 1


def test_complete_marks_rate_limit_as_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        raise _http_error(429)

    monkeypatch.setattr("meetai.services.openai_completion_client.sleep", lambda _: None)
    monkeypatch.setattr("meetai.services.openai_completion_client.request.urlopen", fake_urlopen)

    with pytest.raises(OpenAiCompletionError) as exc_info:
        _build_client().complete([{"role": "user", "content": "Hi"}])

    assert exc_info.value.retryable is True


def test_complete_returns_empty_string_without_content(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "meetai.services.openai_completion_client.request.urlopen",
        lambda *args, **kwargs: _FakeResponse(_completion_payload(None)),
    )

    assert _build_client().complete([{"role": "user", "content": "Hi"}]) == ""


def test_complete_requires_api_key() -> None:
    client = OpenAiCompletionClient(api_key="", model="gpt-4o")

    with pytest.raises(OpenAiCompletionError, match="not configured"):
        client.complete([{"role": "user", "content": "Hi"}])
