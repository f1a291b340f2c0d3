import json
from collections.abc import Mapping
from typing import Any
from urllib import error, parse, request

import jwt


class StreamApiError(Exception):
    pass


def create_server_token(secret: str) -> str:
    return jwt.encode({"server": True}, secret, algorithm="HS256")


class StreamApiClient:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        secret_key: str,
        timeout_seconds: float = 10.0,
        user_agent: str = "MeetAiBackend/1.0",
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.secret_key = secret_key
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent

    def _request(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.api_key or not self.secret_key:
            raise StreamApiError("Stream API credentials are not configured.")

        query = parse.urlencode({"api_key": self.api_key})
        endpoint = f"{self.api_url}{path}?{query}"
        data = json.dumps(dict(payload)).encode("utf-8") if payload is not None else None
        req = request.Request(
            endpoint,
            data=data,
            headers={
                "Authorization": create_server_token(self.secret_key),
                "stream-auth-type": "jwt",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            },
            method=method,
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise StreamApiError(f"Stream API HTTP {exc.code}: {body or 'empty response body'}") from exc
        except error.URLError as exc:
            raise StreamApiError(f"Stream API connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise StreamApiError("Stream API request timed out.") from exc

        if not response_body:
            return {}
        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise StreamApiError("Stream API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise StreamApiError("Stream API response is not a JSON object.")
        return parsed_body
