"""Base LLM provider interface."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from toolchat.context.message import ChatMessage, UsageMetadata
from toolchat.context.parts import FunctionCallPart, Part
from toolchat.errors import FatalApiError, TransientApiError

# Rate limiting, request timeout and server-side overload.
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient(error: BaseException) -> bool:
    """Whether *error* is worth retrying with another attempt."""
    if isinstance(error, TransientApiError):
        return True
    if isinstance(error, FatalApiError):
        return False
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.ConnectError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES
    status = getattr(error, "status_code", None)
    return isinstance(status, int) and status in TRANSIENT_STATUS_CODES


@dataclass
class GenerationConfig:
    model: str
    temperature: float = 1.0
    max_output_tokens: int = 8192
    tools: list[dict[str, Any]] = field(default_factory=list)
    system_instruction: str | None = None


@dataclass
class LLMResponse:
    """One backend response. ``content`` is None when the backend returned no candidate."""

    content: list[Part] | None = None
    usage: UsageMetadata | None = None
    grounding: dict[str, Any] | None = None
    finish_reason: str = "stop"
    model: str | None = None

    @property
    def function_calls(self) -> list[FunctionCallPart]:
        return [p for p in self.content or [] if isinstance(p, FunctionCallPart)]


class LLMProvider(ABC):
    """
    Abstract base class for LLM backends.

    Implementations raise :class:`TransientApiError` or :class:`FatalApiError`
    on failure; they never retry on their own.
    """

    def __init__(self, api_base: str | None = None):
        self.api_base = api_base

    @abstractmethod
    async def generate(
        self,
        contents: Sequence[ChatMessage],
        config: GenerationConfig,
        api_key: str,
    ) -> LLMResponse:
        ...
