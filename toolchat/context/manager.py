"""Message store for one chat session."""

from __future__ import annotations

import itertools
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Sequence

from toolchat.context.dependencies import DependencyTracker
from toolchat.context.message import ChatMessage, MessageRole, UsageMetadata
from toolchat.context.parts import Part
from toolchat.context.pruner import ContextChange, ContextPruner, ToolBehaviorSource
from toolchat.context.tokens import estimate_parts_tokens
from toolchat.logging import get_logger

logger = get_logger(__name__)

ContextListener = Callable[[ContextChange], None]


class ContextManager:
    """
    Ordered message list, dependency links and token accounting.

    All mutating operations run under one re-entrant lock, so pruning that
    an append triggers can't interleave with another mutation. Each operation
    produces one :class:`ContextChange` and at most one listener notification,
    however many pruning rules fired.
    """

    def __init__(
        self,
        behaviors: ToolBehaviorSource | None = None,
        *,
        keep_user_turns: int = 2,
        token_threshold: int = 250_000,
    ):
        self._lock = threading.RLock()
        self._messages: list[ChatMessage] = []
        self._ids = itertools.count(1)
        self._token_count = 0
        self._listeners: list[ContextListener] = []
        self.token_threshold = token_threshold
        self.tracker = DependencyTracker(lambda: self._messages)
        self.pruner = ContextPruner(self._messages, self.tracker, behaviors, keep_user_turns)

    # -- reading ---------------------------------------------------------

    def get_context(self) -> list[ChatMessage]:
        with self._lock:
            return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def token_count(self) -> int:
        return self._token_count

    def context_window_usage(self) -> float:
        """Fraction of ``token_threshold`` currently used."""
        return self._token_count / self.token_threshold

    def get_message(self, message_id: int) -> ChatMessage | None:
        with self._lock:
            return next((m for m in self._messages if m.id == message_id), None)

    def get_message_for_part(self, part: Part) -> ChatMessage | None:
        with self._lock:
            return next((m for m in self._messages if m.contains(part)), None)

    def linked_of(self, part: Part) -> list[Part]:
        with self._lock:
            return self.tracker.linked_of(part)

    # -- building --------------------------------------------------------

    def create_message(
        self,
        role: MessageRole,
        parts: Iterable[Part],
        *,
        model_id: str | None = None,
        usage: UsageMetadata | None = None,
        grounding: Mapping[str, Any] | None = None,
        tool_feedback: bool = False,
    ) -> ChatMessage:
        """Build a message with the next session id. It is not appended."""
        with self._lock:
            now = datetime.now()
            elapsed = None
            if self._messages:
                elapsed = int((now - self._messages[-1].created_at).total_seconds() * 1000)
            return ChatMessage(
                id=next(self._ids),
                role=role,
                parts=tuple(parts),
                model_id=model_id,
                usage=usage,
                grounding=grounding,
                created_at=now,
                elapsed_ms=elapsed,
                tool_feedback=tool_feedback,
            )

    def link(self, message: ChatMessage, owner: Part, dependents: Iterable[Part]) -> ChatMessage:
        """Record ``owner -> dependents`` on *message* (not yet appended). See :class:`DependencyTracker`."""
        with self._lock:
            return self.tracker.link(message, owner, dependents)

    # -- mutating --------------------------------------------------------

    def add(self, message: ChatMessage) -> ContextChange:
        """
        Append *message*, applying the automatic pruning policies.

        Order: stateful-replace against the prior context, append, token
        refresh, then the ephemeral rule when *message* is a user message.
        """
        if not message.parts:
            raise ValueError("Cannot append a message with no parts")
        change = ContextChange()
        with self._lock:
            if any(m.id == message.id for m in self._messages):
                raise ValueError(f"Message {message.id} is already in context")
            self._run(self.pruner.handle_stateful_replace, message, change)
            self._messages.append(message)
            change.added.append(message)
            self._refresh_tokens(message)
            if message.role is MessageRole.USER:
                self._run(self.pruner.prune_ephemeral_tool_calls, change)
        logger.debug(
            "context_message_added",
            message_id=message.id,
            role=message.role.value,
            parts=len(message.parts),
            token_count=self._token_count,
        )
        self._notify(change)
        return change

    def prune_by_reference(self, parts: Iterable[Part], reason: str = "manual") -> bool:
        return self._mutate(self.pruner.prune_by_reference, list(parts), reason)

    def prune_messages(self, message_ids: Iterable[int], reason: str = "manual") -> bool:
        return self._mutate(self.pruner.prune_messages, list(message_ids), reason)

    def prune_parts(self, message_id: int, indices: Iterable[int], reason: str = "manual") -> bool:
        return self._mutate(self.pruner.prune_parts, message_id, list(indices), reason)

    def prune_tool_call(self, tool_call_id: str, reason: str = "manual") -> bool:
        return self._mutate(self.pruner.prune_tool_call, tool_call_id, reason)

    def clear(self) -> None:
        change = ContextChange(cleared=True)
        with self._lock:
            change.removed_ids.extend(m.id for m in self._messages)
            self._messages.clear()
            self._token_count = 0
        logger.info("context_cleared", removed=len(change.removed_ids))
        self._notify(change)

    def set_context(self, messages: Sequence[ChatMessage]) -> None:
        """Replace the whole context, e.g. when restoring a conversation."""
        change = ContextChange(cleared=True)
        with self._lock:
            change.removed_ids.extend(m.id for m in self._messages)
            self._messages[:] = list(messages)
            change.added.extend(self._messages)
            next_id = max((m.id for m in self._messages), default=0) + 1
            self._ids = itertools.count(next_id)
            self._token_count = self._estimate_from_scratch()
        self._notify(change)

    # -- listeners -------------------------------------------------------

    def add_listener(self, listener: ContextListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ContextListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -- internals -------------------------------------------------------

    def _mutate(self, operation: Callable[..., bool], *args: Any) -> bool:
        change = ContextChange()
        with self._lock:
            changed = self._run(operation, *args, change)
        if changed:
            self._notify(change)
        return changed

    def _run(self, operation: Callable[..., bool], *args: Any) -> bool:
        change: ContextChange = args[-1]
        before = change.pruned_tokens
        changed = operation(*args)
        self._token_count = max(0, self._token_count - (change.pruned_tokens - before))
        return changed

    def _refresh_tokens(self, message: ChatMessage) -> None:
        total = message.usage.effective_total if message.usage else None
        if total is not None:
            self._token_count = max(0, total)
        else:
            self._token_count += estimate_parts_tokens(message.parts)

    def _estimate_from_scratch(self) -> int:
        for message in reversed(self._messages):
            if message.usage and message.usage.effective_total is not None:
                return max(0, message.usage.effective_total)
        return sum(estimate_parts_tokens(m.parts) for m in self._messages)

    def _notify(self, change: ContextChange) -> None:
        if not change.changed:
            return
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.warning("context_listener_failed", error=str(e), error_type=type(e).__name__)
