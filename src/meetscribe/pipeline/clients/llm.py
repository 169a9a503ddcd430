"""Text-generation client via LiteLLM Router.

Implements the Summarizer capability for the summary job controller:
- Claude Sonnet as the primary summary model, GPT-4o as fallback
- No Router-level retries; the controller owns retry and backoff
- litellm.RateLimitError maps to UpstreamRateLimited, every other
  failure to UpstreamUnavailable
"""

from __future__ import annotations

import litellm
import structlog
from litellm import Router

from src.meetscribe.config import Settings
from src.meetscribe.core.monitoring import track_upstream_call
from src.meetscribe.pipeline.errors import UpstreamRateLimited, UpstreamUnavailable

logger = structlog.get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are summarizing a meeting transcript. Write a concise summary "
    "covering the main topics, decisions made, and action items with "
    "owners. Note absence of items rather than making assumptions."
)


def build_model_list(settings: Settings) -> list[dict]:
    model_list: list[dict] = []
    if settings.ANTHROPIC_API_KEY:
        model_list.append({
            "model_name": "summary",
            "litellm_params": {
                "model": "anthropic/claude-sonnet-4-20250514",
                "api_key": settings.ANTHROPIC_API_KEY,
            },
        })
    if settings.OPENAI_API_KEY:
        model_list.append({
            "model_name": "summary",
            "litellm_params": {
                "model": "openai/gpt-4o",
                "api_key": settings.OPENAI_API_KEY,
            },
        })
    return model_list


class LiteLLMSummarizer:
    """Summarizes transcripts through a LiteLLM Router.

    Args:
        settings: Application settings (API keys, timeout, max tokens).
    """

    def __init__(self, settings: Settings) -> None:
        self._max_tokens = settings.SUMMARY_MAX_TOKENS
        model_list = build_model_list(settings)
        if not model_list:
            logger.warning("No LLM API keys configured -- summarizer will be unavailable")
            self.router = None
            return
        self.router = Router(
            model_list=model_list,
            num_retries=0,
            timeout=settings.LLM_TIMEOUT,
        )

    async def summarize(self, transcript: str) -> str:
        """Return summary text for an ordered transcript.

        Raises:
            UpstreamRateLimited: Provider rate limit.
            UpstreamUnavailable: Missing configuration or any other failure.
        """
        if self.router is None:
            raise UpstreamUnavailable("No LLM API keys configured")
        async with track_upstream_call("llm"):
            try:
                response = await self.router.acompletion(
                    model="summary",
                    messages=[
                        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                        {"role": "user", "content": transcript},
                    ],
                    max_tokens=self._max_tokens,
                    temperature=0.3,
                )
            except litellm.RateLimitError as exc:
                raise UpstreamRateLimited(str(exc)) from exc
            except Exception as exc:
                raise UpstreamUnavailable(str(exc) or type(exc).__name__) from exc

        content = response.choices[0].message.content or ""
        if not content.strip():
            raise UpstreamUnavailable("Summarizer returned an empty response")
        return content.strip()
