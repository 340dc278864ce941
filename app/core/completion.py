"""Text-completion service with per-call-site model fallback chains.

Usage:
    client = CompletionClient(RunContext.from_settings(), plan="free")
    result = await client.complete(
        parse_model_chain(settings.PRIMER_MODELS),
        [{"role": "system", "content": "..."}, {"role": "user", "content": "..."}],
        max_tokens=1800,
    )

Each model entry is ``provider:model`` (openai, groq, anthropic). Models are
tried in order; any error-shaped outcome advances to the next. Only an
exhausted chain raises CompletionError.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from app.core.config import Settings, get_settings
from app.core.errors import CompletionError
from app.core.logging import get_logger
from app.core.run_context import RunContext

logger = get_logger(__name__)

PROVIDERS = ("openai", "groq", "anthropic")

_RATE_LIMIT_ERRORS = (openai.RateLimitError, anthropic.RateLimitError)


@dataclass
class CompletionResult:
    content: str
    model: str


def split_model(entry: str) -> tuple[str, str]:
    """``groq:llama-3.1-8b-instant`` → ("groq", "llama-3.1-8b-instant"); bare names are openai."""
    provider, sep, model = entry.partition(":")
    if not sep:
        return "openai", entry.strip()
    return provider.strip().lower(), model.strip()


class CompletionClient:
    """Completion calls for one pipeline run, sharing the run's backoff."""

    def __init__(
        self,
        run: RunContext,
        plan: str = "free",
        settings: Settings | None = None,
    ):
        self.run = run
        self.plan = plan
        self.settings = settings or get_settings()
        self.calls = 0
        self._clients: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Provider clients
    # ------------------------------------------------------------------

    def _groq_key(self) -> str:
        s = self.settings
        if s.is_paid(self.plan):
            return s.GROQ_API_KEY_PRO or s.GROQ_API_KEY
        return s.GROQ_API_KEY_FREE or s.GROQ_API_KEY

    def _api_key(self, provider: str) -> str:
        if provider == "openai":
            return self.settings.OPENAI_API_KEY
        if provider == "groq":
            return self._groq_key()
        if provider == "anthropic":
            return self.settings.ANTHROPIC_API_KEY
        return ""

    def _get_client(self, provider: str) -> Any:
        if provider not in self._clients:
            key = self._api_key(provider)
            if provider == "anthropic":
                self._clients[provider] = AsyncAnthropic(api_key=key)
            elif provider == "groq":
                self._clients[provider] = AsyncOpenAI(api_key=key, base_url=self.settings.GROQ_BASE_URL)
            else:
                self._clients[provider] = AsyncOpenAI(api_key=key)
        return self._clients[provider]

    async def _call(
        self,
        provider: str,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> str:
        client = self._get_client(provider)

        if provider == "anthropic":
            system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
            turns = [m for m in messages if m["role"] != "system"]
            response = await client.messages.create(
                model=model,
                system=system,
                messages=turns,
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout,
            )
            return "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            )

        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=timeout,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def complete(
        self,
        models: list[str],
        messages: list[dict[str, str]],
        *,
        max_tokens: int = 512,
        temperature: float = 0.2,
        timeout: float | None = None,
    ) -> CompletionResult:
        """
        Try each model in order until one returns non-empty content.

        Args:
            models: Ordered ``provider:model`` entries
            messages: Chat messages (system/user/assistant)
            max_tokens: Output token cap
            temperature: Sampling temperature
            timeout: Per-attempt request timeout (defaults to CALL_TIMEOUT_S)

        Returns:
            CompletionResult with the content and the model that produced it

        Raises:
            CompletionError: If every model failed or none is configured
        """
        timeout = timeout or self.settings.CALL_TIMEOUT_S
        attempts: list[str] = []

        for entry in models:
            provider, model = split_model(entry)
            if provider not in PROVIDERS:
                attempts.append(f"{entry}: unknown provider")
                continue
            if not self._api_key(provider):
                attempts.append(f"{entry}: disabled")
                continue

            delay = self.run.jittered_delay_s()
            if delay:
                await asyncio.sleep(delay)

            self.calls += 1
            try:
                content = await self._call(provider, model, messages, max_tokens, temperature, timeout)
            except _RATE_LIMIT_ERRORS:
                backoff = self.run.bump()
                attempts.append(f"{entry}: rate limited")
                logger.warning(
                    f"Rate limited by {entry}, backoff now {backoff:.0f}ms",
                    extra={"run_id": self.run.run_id, "model": entry},
                )
                continue
            except Exception as e:
                self.run.relax()
                attempts.append(f"{entry}: {type(e).__name__}")
                logger.warning(
                    f"Completion failed on {entry}: {e}",
                    extra={"run_id": self.run.run_id, "model": entry},
                )
                continue

            if not content.strip():
                attempts.append(f"{entry}: empty")
                continue

            self.run.relax()
            return CompletionResult(content=content, model=entry)

        raise CompletionError(f"All models failed: {'; '.join(attempts) or 'no models'}", attempts)
