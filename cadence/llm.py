"""Text-generation boundary: one async ``generate`` call per prompt.

Callers treat the returned text as untrusted; JSON parsing and schema
checks happen in the pipeline stages, never here.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from cadence.config import get_settings
from cadence.errors import LLMCallError

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}


@dataclass
class TokenUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class GenerationResult:
    text: str
    model: str
    usage: TokenUsage | None = None


def usage_dict(usage: TokenUsage | None) -> dict[str, int | None] | None:
    return usage.as_dict() if usage is not None else None


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4096,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or DEFAULT_MODELS["anthropic"]
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or DEFAULT_MODELS[self.provider]
            kwargs: dict[str, Any] = {}
            key = (self._api_key or os.environ.get("OPENAI_API_KEY") or "").strip()
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def generate(self, prompt: str, system: str, model: str | None = None) -> GenerationResult:
        """Send system+prompt to the provider and return raw text plus token usage."""
        model_id = (model or "").strip() or self.model
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=model_id,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                )
                text = "".join(
                    getattr(block, "text", "") for block in response.content
                ).strip()
                raw_usage = getattr(response, "usage", None)
                usage = None
                if raw_usage is not None:
                    inp = getattr(raw_usage, "input_tokens", None)
                    out = getattr(raw_usage, "output_tokens", None)
                    total = (inp or 0) + (out or 0) if inp is not None or out is not None else None
                    usage = TokenUsage(inp, out, total)
            else:
                response = await self._client.chat.completions.create(
                    model=model_id,
                    max_tokens=self.max_tokens,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                )
                text = (response.choices[0].message.content or "").strip()
                raw_usage = getattr(response, "usage", None)
                usage = None
                if raw_usage is not None:
                    usage = TokenUsage(
                        getattr(raw_usage, "prompt_tokens", None),
                        getattr(raw_usage, "completion_tokens", None),
                        getattr(raw_usage, "total_tokens", None),
                    )
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        log.debug("LLM %s returned %d chars", model_id, len(text))
        return GenerationResult(text=text, model=model_id, usage=usage)
