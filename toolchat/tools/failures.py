"""Blocks tool calls that keep failing with the same arguments."""

from __future__ import annotations

import json
import time
from collections import defaultdict, deque
from typing import Callable

from toolchat.context.parts import FunctionCallPart


class FailureTracker:
    """Counts failures per (name, args) inside a sliding time window."""

    def __init__(
        self,
        max_failures: int = 3,
        window_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_failures = max_failures
        self.window_s = window_s
        self._clock = clock
        self._failures: dict[str, deque[float]] = defaultdict(deque)

    @staticmethod
    def key(call: FunctionCallPart) -> str:
        return call.name + ":" + json.dumps(call.args or {}, sort_keys=True, default=str)

    def record_failure(self, call: FunctionCallPart) -> None:
        self._failures[self.key(call)].append(self._clock())

    def record_success(self, call: FunctionCallPart) -> None:
        self._failures.pop(self.key(call), None)

    def failure_count(self, call: FunctionCallPart) -> int:
        key = self.key(call)
        if key not in self._failures:
            return 0
        stamps = self._failures[key]
        horizon = self._clock() - self.window_s
        while stamps and stamps[0] < horizon:
            stamps.popleft()
        if not stamps:
            del self._failures[key]
            return 0
        return len(stamps)

    def is_blocked(self, call: FunctionCallPart) -> bool:
        return self.failure_count(call) >= self.max_failures
