from urllib import error, request

from meetai.core.config import Settings

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class TranscriptFetchError(Exception):
    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TranscriptClient:
    def __init__(
        self,
        timeout_seconds: float = 15.0,
        user_agent: str = "MeetAiBackend/1.0",
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent

    def fetch_text(self, transcript_url: str) -> str:
        req = request.Request(
            transcript_url,
            headers={"User-Agent": self.user_agent, "Accept": "application/x-ndjson, */*"},
            method="GET",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except error.HTTPError as exc:
            raise TranscriptFetchError(
                f"Transcript download HTTP {exc.code}.",
                retryable=exc.code in RETRYABLE_STATUS_CODES,
            ) from exc
        except error.URLError as exc:
            raise TranscriptFetchError(f"Transcript download connection error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise TranscriptFetchError("Transcript download timed out.") from exc

        return response_body.decode("utf-8", errors="replace")


def create_transcript_client(settings: Settings) -> TranscriptClient:
    return TranscriptClient(
        timeout_seconds=settings.transcript_fetch_timeout_seconds,
        user_agent=settings.stream_api_user_agent,
    )
