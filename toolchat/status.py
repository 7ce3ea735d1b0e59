"""Session status and API error history, for observers such as the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from toolchat.context.message import UsageMetadata
from toolchat.logging import get_logger

logger = get_logger(__name__)


class ChatStatus(str, Enum):
    IDLE = "idle"
    API_CALL_IN_PROGRESS = "api_call_in_progress"
    TOOL_EXECUTION_IN_PROGRESS = "tool_execution_in_progress"
    WAITING_WITH_BACKOFF = "waiting_with_backoff"
    MAX_RETRIES_REACHED = "max_retries_reached"


@dataclass(frozen=True)
class ApiErrorRecord:
    """One failed backend attempt."""

    model_id: str
    key_fingerprint: str
    attempt: int
    backoff_s: float | None
    error: BaseException
    transient: bool
    timestamp: datetime = field(default_factory=datetime.now)


StatusListener = Callable[["StatusManager"], None]


class StatusManager:
    def __init__(self) -> None:
        self.status = ChatStatus.IDLE
        self.detail: str | None = None
        self.executing_tool: str | None = None
        self.last_usage: UsageMetadata | None = None
        self.last_latency_ms: float | None = None
        self._api_errors: list[ApiErrorRecord] = []
        self._listeners: list[StatusListener] = []

    @property
    def api_errors(self) -> list[ApiErrorRecord]:
        return list(self._api_errors)

    def set_status(self, status: ChatStatus, detail: str | None = None) -> None:
        self.status = status
        self.detail = detail
        self._fire()

    def set_executing_tool(self, name: str | None) -> None:
        self.executing_tool = name
        if name is None:
            self.set_status(ChatStatus.IDLE)
        else:
            self.set_status(ChatStatus.TOOL_EXECUTION_IN_PROGRESS, name)

    def record_api_error(self, record: ApiErrorRecord) -> None:
        self._api_errors.append(record)
        self._fire()

    def clear_api_errors(self) -> None:
        if self._api_errors:
            self._api_errors.clear()
            self._fire()

    def record_success(self, usage: UsageMetadata | None, latency_ms: float) -> None:
        self._api_errors.clear()
        self.last_usage = usage
        self.last_latency_ms = latency_ms
        self._fire()

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _fire(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning("status_listener_failed", error=str(e), error_type=type(e).__name__)
