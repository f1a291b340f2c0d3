import json
from collections.abc import Mapping, Sequence
from http.client import RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, request

from meetai.core.config import Settings

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class OpenAiCompletionError(Exception):
    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class OpenAiCompletionClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 60.0,
        api_base_url: str = "https://api.openai.com/v1",
        max_attempts: int = 3,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self.max_attempts = max(max_attempts, 1)

    def complete(self, messages: Sequence[Mapping[str, str]]) -> str:
        """Return the first choice's text, or an empty string when the model sent none."""
        if not self.api_key:
            raise OpenAiCompletionError("OpenAI API key is not configured.")

        response_payload = self._create_chat_completion(messages)
        return self._extract_text_response(response_payload)

    def _create_chat_completion(self, messages: Sequence[Mapping[str, str]]) -> dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": [dict(message) for message in messages],
        }
        req = request.Request(
            f"{self.api_base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        response_body: bytes | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    response_body = response.read()
                break
            except TimeoutError as exc:
                if attempt >= self.max_attempts:
                    raise OpenAiCompletionError(
                        "OpenAI API request timed out.",
                        retryable=True,
                    ) from exc
            except RemoteDisconnected as exc:
                if attempt >= self.max_attempts:
                    raise OpenAiCompletionError(
                        "OpenAI API connection was closed before sending a response.",
                        retryable=True,
                    ) from exc
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                is_retryable_status = exc.code in RETRYABLE_STATUS_CODES
                if not is_retryable_status or attempt >= self.max_attempts:
                    raise OpenAiCompletionError(
                        f"OpenAI API HTTP {exc.code}: {body or 'empty response body'}",
                        retryable=is_retryable_status,
                    ) from exc
            except error.URLError as exc:
                if attempt >= self.max_attempts:
                    raise OpenAiCompletionError(
                        f"OpenAI API connection error: {exc.reason}",
                        retryable=True,
                    ) from exc

            sleep(0.5 * attempt)

        if response_body is None:
            raise OpenAiCompletionError(
                "OpenAI API request failed after multiple attempts.",
                retryable=True,
            )

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise OpenAiCompletionError("OpenAI API returned invalid JSON.", retryable=True) from exc

        if not isinstance(parsed_body, dict):
            raise OpenAiCompletionError("OpenAI API response is not a JSON object.", retryable=True)
        return parsed_body

    def _extract_text_response(self, payload: Mapping[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise OpenAiCompletionError("OpenAI API response missing choices.")

        first_choice = choices[0]
        if not isinstance(first_choice, Mapping):
            raise OpenAiCompletionError("OpenAI API response choice is invalid.")

        message = first_choice.get("message")
        if not isinstance(message, Mapping):
            raise OpenAiCompletionError("OpenAI API response missing message.")

        content = message.get("content")
        if not isinstance(content, str):
            return ""
        return content.strip()


def create_openai_completion_client(settings: Settings) -> OpenAiCompletionClient:
    return OpenAiCompletionClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout_seconds=settings.openai_api_timeout_seconds,
        api_base_url=settings.openai_api_url,
        max_attempts=settings.openai_max_attempts,
    )
