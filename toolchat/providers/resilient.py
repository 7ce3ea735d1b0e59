"""Retry, backoff and key rotation around a single backend call."""

from __future__ import annotations

import asyncio
import random
import time
from typing import Sequence

from toolchat.config.schema import RetryConfig
from toolchat.context.message import ChatMessage
from toolchat.errors import FatalApiError, MaxRetriesExceededError, TurnInterruptedError
from toolchat.logging import get_logger
from toolchat.providers.base import GenerationConfig, LLMProvider, LLMResponse, is_transient
from toolchat.providers.credentials import KeyRotation, key_fingerprint
from toolchat.status import ApiErrorRecord, ChatStatus, StatusManager

logger = get_logger(__name__)


def calculate_delay(
    retry_index: int,
    base_delay: float,
    max_delay: float,
    max_jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """``min(base * 2**retry_index, max)`` plus uniform jitter in ``[0, max_jitter)``."""
    delay = min(base_delay * (2 ** retry_index), max_delay)
    if max_jitter > 0:
        delay += (rng or random).uniform(0, max_jitter)
    return delay


class ResilientClient:
    """
    Calls an :class:`LLMProvider` with bounded retries.

    Every attempt, retries included, takes the next key from the rotation.
    Transient failures back off exponentially; the backoff sleep is the only
    place where *interrupt* is honoured, and setting it aborts the turn.
    """

    def __init__(
        self,
        provider: LLMProvider,
        rotation: KeyRotation,
        retry: RetryConfig | None = None,
        status: StatusManager | None = None,
        rng: random.Random | None = None,
    ):
        self.provider = provider
        self.rotation = rotation
        self.retry = retry or RetryConfig()
        self.status = status or StatusManager()
        self._rng = rng

    async def generate(
        self,
        contents: Sequence[ChatMessage],
        config: GenerationConfig,
        interrupt: asyncio.Event | None = None,
    ) -> LLMResponse:
        """
        Raises:
            FatalApiError: A non-transient failure, raised on the first occurrence.
            MaxRetriesExceededError: ``max_retries`` attempts all failed transiently.
            TurnInterruptedError: *interrupt* was set during a backoff sleep.
        """
        max_attempts = self.retry.max_retries
        for attempt in range(1, max_attempts + 1):
            api_key = self.rotation.next_key()
            self.status.set_status(ChatStatus.API_CALL_IN_PROGRESS, f"attempt {attempt}/{max_attempts}")
            t0 = time.monotonic()
            try:
                response = await self.provider.generate(contents, config, api_key)
            except Exception as e:
                transient = is_transient(e)
                final = not transient or attempt >= max_attempts
                delay = None if final else calculate_delay(
                    attempt - 1,
                    self.retry.initial_delay_s,
                    self.retry.max_delay_s,
                    self.retry.max_jitter_s,
                    self._rng,
                )
                self.status.record_api_error(ApiErrorRecord(
                    model_id=config.model,
                    key_fingerprint=key_fingerprint(api_key),
                    attempt=attempt,
                    backoff_s=delay,
                    error=e,
                    transient=transient,
                ))
                if not transient:
                    logger.error("llm_call_fatal", model=config.model, attempt=attempt, error=str(e))
                    self.status.set_status(ChatStatus.IDLE)
                    if isinstance(e, FatalApiError):
                        raise
                    raise FatalApiError(str(e), cause=e) from e
                if final:
                    logger.error("llm_max_retries_reached", model=config.model, attempts=attempt, error=str(e))
                    self.status.set_status(ChatStatus.MAX_RETRIES_REACHED)
                    raise MaxRetriesExceededError(attempt, e) from e

                logger.warning(
                    "llm_chat_retry",
                    model=config.model,
                    attempt=attempt,
                    delay_s=round(delay, 3),
                    key=key_fingerprint(api_key),
                    error_type=type(e).__name__,
                )
                self.status.set_status(ChatStatus.WAITING_WITH_BACKOFF, f"retrying in {delay:.1f}s")
                await self._backoff(delay, interrupt)
                continue

            latency_ms = (time.monotonic() - t0) * 1000
            self.status.record_success(response.usage, latency_ms)
            logger.debug("llm_call_completed", model=config.model, attempt=attempt, latency_ms=round(latency_ms, 1))
            return response

        raise AssertionError("unreachable: max_retries must be >= 1")

    async def _backoff(self, delay: float, interrupt: asyncio.Event | None) -> None:
        if interrupt is None:
            await asyncio.sleep(delay)
            return
        if interrupt.is_set():
            raise TurnInterruptedError("Turn interrupted before retry")
        try:
            await asyncio.wait_for(interrupt.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.status.set_status(ChatStatus.IDLE)
        logger.info("llm_backoff_interrupted", delay_s=round(delay, 3))
        raise TurnInterruptedError("Turn interrupted during retry backoff")
