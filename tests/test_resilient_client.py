"""Tests for ResilientClient retry, backoff and key rotation."""

import asyncio
import random
from typing import Sequence
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from toolchat.config.schema import RetryConfig
from toolchat.context.message import ChatMessage, UsageMetadata
from toolchat.context.parts import TextPart
from toolchat.errors import (
    FatalApiError,
    MaxRetriesExceededError,
    NoCredentialsError,
    TransientApiError,
    TurnInterruptedError,
)
from toolchat.providers.base import GenerationConfig, LLMProvider, LLMResponse, is_transient
from toolchat.providers.credentials import RoundRobinRotation
from toolchat.providers.resilient import ResilientClient, calculate_delay
from toolchat.status import ChatStatus


class ScriptedProvider(LLMProvider):
    """Raises the queued errors in order, then answers."""

    def __init__(self, *errors: Exception, always: Exception | None = None):
        super().__init__()
        self.errors = list(errors)
        self.always = always
        self.keys: list[str] = []

    async def generate(self, contents: Sequence[ChatMessage], config: GenerationConfig, api_key: str) -> LLMResponse:
        self.keys.append(api_key)
        if self.always is not None:
            raise self.always
        if self.errors:
            raise self.errors.pop(0)
        return LLMResponse(content=[TextPart("hi")], usage=UsageMetadata(total_token_count=12))


def _overloaded() -> TransientApiError:
    return TransientApiError("503 Service Unavailable", status_code=503)


def _client(provider: LLMProvider, keys=("key-aaaaa1", "key-bbbbb2", "key-ccccc3"), **retry) -> ResilientClient:
    config = RetryConfig(**{"initial_delay_s": 1.0, "max_delay_s": 4.0, "max_jitter_s": 0.0, **retry})
    return ResilientClient(provider, RoundRobinRotation(list(keys), start=0), config)


CONFIG = GenerationConfig(model="test-model")


@pytest.mark.asyncio
async def test_always_503_makes_exactly_max_retries_attempts():
    provider = ScriptedProvider(always=_overloaded())
    client = _client(provider, max_retries=5)
    sleeps: list[float] = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    with patch("toolchat.providers.resilient.asyncio.sleep", side_effect=fake_sleep):
        with pytest.raises(MaxRetriesExceededError) as exc:
            await client.generate([], CONFIG)

    assert len(provider.keys) == 5
    assert exc.value.attempts == 5
    assert "after 5 attempts" in str(exc.value)
    assert sleeps == [1.0, 2.0, 4.0, 4.0]
    assert sleeps == sorted(sleeps)
    assert client.status.status is ChatStatus.MAX_RETRIES_REACHED
    assert [r.attempt for r in client.status.api_errors] == [1, 2, 3, 4, 5]
    assert client.status.api_errors[-1].backoff_s is None


@pytest.mark.asyncio
async def test_each_attempt_uses_the_next_key():
    provider = ScriptedProvider(_overloaded(), _overloaded())
    client = _client(provider)

    with patch("toolchat.providers.resilient.asyncio.sleep", new=AsyncMock()):
        response = await client.generate([], CONFIG)

    assert response.content[0].text == "hi"
    assert provider.keys == ["key-aaaaa1", "key-bbbbb2", "key-ccccc3"]


@pytest.mark.asyncio
async def test_success_clears_error_history():
    provider = ScriptedProvider(_overloaded())
    client = _client(provider)

    with patch("toolchat.providers.resilient.asyncio.sleep", new=AsyncMock()):
        await client.generate([], CONFIG)

    assert client.status.api_errors == []
    assert client.status.last_usage.total_token_count == 12
    assert client.status.last_latency_ms is not None


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried():
    provider = ScriptedProvider(ValueError("400 bad request"))
    client = _client(provider)

    with pytest.raises(FatalApiError) as exc:
        await client.generate([], CONFIG)

    assert len(provider.keys) == 1
    assert isinstance(exc.value.cause, ValueError)
    assert client.status.api_errors[0].transient is False


@pytest.mark.asyncio
async def test_provider_fatal_error_is_reraised_as_is():
    original = FatalApiError("invalid api key")
    client = _client(ScriptedProvider(original))

    with pytest.raises(FatalApiError) as exc:
        await client.generate([], CONFIG)

    assert exc.value is original


@pytest.mark.asyncio
async def test_interrupt_during_backoff_aborts_turn():
    provider = ScriptedProvider(always=_overloaded())
    client = _client(provider, initial_delay_s=30.0, max_delay_s=30.0)
    interrupt = asyncio.Event()

    async def kill_soon():
        await asyncio.sleep(0.01)
        interrupt.set()

    killer = asyncio.create_task(kill_soon())
    with pytest.raises(TurnInterruptedError):
        await asyncio.wait_for(client.generate([], CONFIG, interrupt), timeout=5)
    await killer

    assert len(provider.keys) == 1
    assert client.status.status is ChatStatus.IDLE


@pytest.mark.asyncio
async def test_interrupt_already_set_aborts_before_sleeping():
    provider = ScriptedProvider(always=_overloaded())
    client = _client(provider)
    interrupt = asyncio.Event()
    interrupt.set()

    with pytest.raises(TurnInterruptedError):
        await client.generate([], CONFIG, interrupt)


@pytest.mark.asyncio
async def test_empty_key_pool_raises():
    client = ResilientClient(ScriptedProvider(), RoundRobinRotation([]))
    with pytest.raises(NoCredentialsError):
        await client.generate([], CONFIG)


def test_calculate_delay_caps_and_adds_jitter():
    assert calculate_delay(0, 1.0, 30.0) == 1.0
    assert calculate_delay(3, 1.0, 30.0) == 8.0
    assert calculate_delay(10, 1.0, 30.0) == 30.0
    rng = random.Random(7)
    jittered = calculate_delay(0, 1.0, 30.0, max_jitter=0.5, rng=rng)
    assert 1.0 <= jittered < 1.5


def test_transient_classification():
    request = httpx.Request("POST", "https://example.invalid")
    assert is_transient(_overloaded())
    assert is_transient(asyncio.TimeoutError())
    assert is_transient(httpx.ConnectError("refused", request=request))
    assert is_transient(httpx.HTTPStatusError("busy", request=request, response=httpx.Response(429, request=request)))
    assert not is_transient(httpx.HTTPStatusError("nope", request=request, response=httpx.Response(401, request=request)))
    assert not is_transient(FatalApiError("bad"))
    assert not is_transient(ValueError("bad"))
