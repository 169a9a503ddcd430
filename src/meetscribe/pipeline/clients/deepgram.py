"""Async HTTP client for the Deepgram pre-recorded transcription API.

Implements the SpeechToText capability for the transcript assembler: one
request per audio chunk, with retry logic (tenacity, 3 attempts,
exponential backoff 1-10s) for transient transport failures and 429s.
Failures that survive the retries are raised as UpstreamRateLimited or
UpstreamUnavailable; the assembler turns them into failed segments.
"""

from __future__ import annotations

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.meetscribe.core.monitoring import track_upstream_call
from src.meetscribe.pipeline.errors import UpstreamRateLimited, UpstreamUnavailable

logger = structlog.get_logger(__name__)

_deepgram_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(
        (UpstreamRateLimited, httpx.ConnectError, httpx.TimeoutException)
    ),
    reraise=True,
)


class DeepgramTranscriber:
    """Speech-to-text via Deepgram's ``/v1/listen`` endpoint.

    Args:
        api_key: Deepgram API key.
        model: Deepgram model name.
        language: BCP-47 language hint.
        base_url: API root, overridable for tests.
    """

    TIMEOUT = 120.0

    def __init__(
        self,
        api_key: str,
        model: str = "nova-3",
        language: str = "en-US",
        base_url: str = "https://api.deepgram.com/v1",
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._params = {
            "model": model,
            "language": language,
            "smart_format": "true",
            "punctuate": "true",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Authorization": f"Token {self._api_key}"},
            timeout=self.TIMEOUT,
        )

    async def transcribe(self, payload: bytes, content_type: str) -> str:
        """Transcribe one audio chunk.

        Raises:
            UpstreamRateLimited: Still rate limited after retries.
            UpstreamUnavailable: Any other failure.
        """
        if not self._api_key:
            raise UpstreamUnavailable("DEEPGRAM_API_KEY is not configured")
        try:
            async with track_upstream_call("stt"):
                return await self._transcribe(payload, content_type)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning("deepgram.unreachable", error=str(exc))
            raise UpstreamUnavailable(f"Deepgram unreachable: {exc}") from exc

    @_deepgram_retry
    async def _transcribe(self, payload: bytes, content_type: str) -> str:
        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}/listen",
                params=self._params,
                content=payload,
                headers={"Content-Type": content_type},
            )
        if response.status_code == 429:
            raise UpstreamRateLimited("Deepgram rate limit reached")
        if response.status_code >= 400:
            logger.warning("deepgram.error", status_code=response.status_code)
            raise UpstreamUnavailable(
                f"Deepgram error: HTTP {response.status_code} - {response.text[:200]}"
            )
        return _extract_transcript(response.json())


def _extract_transcript(data: dict) -> str:
    """Pull the best alternative's transcript out of a /listen response."""
    channels = (data.get("results") or {}).get("channels") or []
    if not channels:
        return ""
    alternatives = channels[0].get("alternatives") or []
    if not alternatives:
        return ""
    return alternatives[0].get("transcript", "") or ""
