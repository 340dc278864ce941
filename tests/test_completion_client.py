"""Tests for the model fallback chain in CompletionClient."""

from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from app.core.completion import CompletionClient, split_model
from app.core.config import Settings
from app.core.errors import CompletionError
from app.core.run_context import RunContext


@pytest.fixture
def settings():
    return Settings(
        SUPABASE_URL="https://test.supabase.co",
        SUPABASE_SERVICE_ROLE_KEY="test-key",
        OPENAI_API_KEY="sk-test",
        GROQ_API_KEY="gsk-test",
        ANTHROPIC_API_KEY="",
    )


@pytest.fixture
def client(settings):
    run = RunContext(start_ms=10, multiplier=1.6, cap_ms=50, jitter_ms=0, seed=1)
    return CompletionClient(run, plan="free", settings=settings)


def _rate_limited() -> openai.RateLimitError:
    request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
    return openai.RateLimitError("rate limited", response=httpx.Response(429, request=request), body=None)


MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def test_split_model():
    assert split_model("groq:llama-3.1-8b-instant") == ("groq", "llama-3.1-8b-instant")
    assert split_model("gpt-4o-mini") == ("openai", "gpt-4o-mini")


@pytest.mark.asyncio
async def test_first_model_success(client):
    client._call = AsyncMock(return_value="hello")

    result = await client.complete(["groq:llama-3.1-8b-instant", "openai:gpt-4o-mini"], MESSAGES)

    assert result.content == "hello"
    assert result.model == "groq:llama-3.1-8b-instant"
    assert client.calls == 1


@pytest.mark.asyncio
async def test_falls_back_on_error(client):
    client._call = AsyncMock(side_effect=[RuntimeError("boom"), "from openai"])

    result = await client.complete(["groq:llama-3.1-8b-instant", "openai:gpt-4o-mini"], MESSAGES)

    assert result.model == "openai:gpt-4o-mini"
    assert client._call.await_count == 2


@pytest.mark.asyncio
async def test_empty_content_advances(client):
    client._call = AsyncMock(side_effect=["   ", "real"])

    result = await client.complete(["groq:a", "openai:b"], MESSAGES)

    assert result.content == "real"


@pytest.mark.asyncio
async def test_rate_limit_bumps_shared_backoff_then_relaxes(client):
    client._call = AsyncMock(side_effect=[_rate_limited(), "ok"])

    result = await client.complete(["groq:a", "openai:b"], MESSAGES)

    assert result.content == "ok"
    assert client.run.rate_limit_events == 1
    # bumped to the 10ms start, then halved by the success
    assert client.run.backoff_ms == 5


@pytest.mark.asyncio
async def test_provider_without_key_is_skipped(client):
    client._call = AsyncMock(return_value="openai answer")

    result = await client.complete(["anthropic:claude-3-5-haiku-latest", "openai:gpt-4o-mini"], MESSAGES)

    assert result.model == "openai:gpt-4o-mini"
    assert client._call.await_count == 1


@pytest.mark.asyncio
async def test_exhausted_chain_raises(client):
    client._call = AsyncMock(side_effect=RuntimeError("down"))

    with pytest.raises(CompletionError) as exc_info:
        await client.complete(["groq:a", "openai:b", "mystery:c"], MESSAGES)

    attempts = exc_info.value.attempts
    assert attempts == ["groq:a: RuntimeError", "openai:b: RuntimeError", "mystery:c: unknown provider"]


@pytest.mark.asyncio
async def test_empty_chain_raises(client):
    with pytest.raises(CompletionError, match="no models"):
        await client.complete([], MESSAGES)


def test_groq_key_follows_plan(settings):
    settings.GROQ_API_KEY_PRO = "gsk-pro"
    settings.GROQ_API_KEY_FREE = "gsk-free"

    paid = CompletionClient(RunContext(), plan="pro", settings=settings)
    free = CompletionClient(RunContext(), plan="free", settings=settings)

    assert paid._api_key("groq") == "gsk-pro"
    assert free._api_key("groq") == "gsk-free"
