"""Pruning engine: manual prune primitives plus the two automatic policies.

Everything funnels into :meth:`ContextPruner.prune_by_reference`, which
expands the requested parts with their dependency closure so a call and its
response always leave the context together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from toolchat.context.dependencies import DependencyTracker
from toolchat.context.message import ChatMessage, Dependencies
from toolchat.context.parts import FunctionCallPart, FunctionResponsePart, Part, part_tool_name
from toolchat.context.tokens import estimate_parts_tokens
from toolchat.logging import get_logger
from toolchat.tools.base import ContextBehavior

logger = get_logger(__name__)


class ToolBehaviorSource(Protocol):
    def behavior_of(self, name: str) -> ContextBehavior: ...

    def resource_id_of(self, name: str, response: dict[str, Any]) -> str | None: ...


class _NoTools:
    """Behaviour source used when no registry is attached."""

    def behavior_of(self, name: str) -> ContextBehavior:
        return ContextBehavior.EPHEMERAL

    def resource_id_of(self, name: str, response: dict[str, Any]) -> str | None:
        return None


@dataclass
class ContextChange:
    """What one context operation did. Returned to callers and handed to listeners."""

    added: list[ChatMessage] = field(default_factory=list)
    removed_ids: list[int] = field(default_factory=list)
    replaced_ids: list[int] = field(default_factory=list)
    pruned_parts: int = 0
    pruned_tokens: int = 0
    reasons: list[str] = field(default_factory=list)
    cleared: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed_ids or self.replaced_ids or self.cleared)


def _clean_dependencies(dependencies: Dependencies, alive: set[Part]) -> tuple[dict[Part, tuple[Part, ...]], bool]:
    cleaned: dict[Part, tuple[Part, ...]] = {}
    changed = False
    for owner, dependents in dependencies.items():
        if owner not in alive:
            changed = True
            continue
        kept = tuple(d for d in dependents if d in alive)
        if len(kept) != len(dependents):
            changed = True
        if kept:
            cleaned[owner] = kept
        else:
            changed = True
    return cleaned, changed


class ContextPruner:
    """
    Prunes parts out of a message list owned by :class:`ContextManager`.

    The list is mutated in place; the caller holds the context lock.
    """

    def __init__(
        self,
        messages: list[ChatMessage],
        tracker: DependencyTracker,
        behaviors: ToolBehaviorSource | None = None,
        keep_user_turns: int = 2,
    ):
        self._messages = messages
        self._tracker = tracker
        self.behaviors: ToolBehaviorSource = behaviors or _NoTools()
        self.keep_user_turns = keep_user_turns

    def prune_by_reference(self, parts: Iterable[Part], reason: str, change: ContextChange) -> bool:
        """Remove *parts* and everything linked to them. Returns whether anything changed."""
        targets = self._tracker.closure(parts)
        if not any(p in targets for m in self._messages for p in m.parts):
            return False

        pruned: list[Part] = []
        removed_ids: list[int] = []
        survivors: list[tuple[ChatMessage, tuple[Part, ...]]] = []
        for message in self._messages:
            kept = tuple(p for p in message.parts if p not in targets)
            pruned.extend(p for p in message.parts if p in targets)
            if kept:
                survivors.append((message, kept))
            else:
                removed_ids.append(message.id)

        alive = {p for _, kept in survivors for p in kept}
        result: list[ChatMessage] = []
        replaced_ids: list[int] = []
        for message, kept in survivors:
            deps, deps_changed = _clean_dependencies(message.dependencies, alive)
            if deps_changed or len(kept) != len(message.parts):
                message = message.with_parts(kept, deps)
                replaced_ids.append(message.id)
            result.append(message)
        self._messages[:] = result

        change.removed_ids.extend(removed_ids)
        change.replaced_ids.extend(replaced_ids)
        change.pruned_parts += len(pruned)
        change.pruned_tokens += estimate_parts_tokens(pruned)
        change.reasons.append(reason)
        logger.info(
            "context_pruned",
            reason=reason,
            parts=len(pruned),
            removed_messages=removed_ids,
            replaced_messages=replaced_ids,
        )
        return True

    def prune_messages(self, message_ids: Iterable[int], reason: str, change: ContextChange) -> bool:
        ids = set(message_ids)
        parts = [p for m in self._messages if m.id in ids for p in m.parts]
        return self.prune_by_reference(parts, reason, change)

    def prune_parts(self, message_id: int, indices: Iterable[int], reason: str, change: ContextChange) -> bool:
        """Prune parts of one message by position. Indices outside the message are skipped with a warning."""
        message = next((m for m in self._messages if m.id == message_id), None)
        if message is None:
            logger.warning("prune_parts_unknown_message", message_id=message_id)
            return False
        indices = list(indices)
        valid = [i for i in indices if 0 <= i < len(message.parts)]
        if len(valid) != len(indices):
            logger.warning(
                "prune_parts_invalid_indices",
                message_id=message_id,
                skipped=[i for i in indices if i not in valid],
                part_count=len(message.parts),
            )
        parts = [message.parts[i] for i in valid]
        return self.prune_by_reference(parts, reason, change)

    def prune_tool_call(self, tool_call_id: str, reason: str, change: ContextChange) -> bool:
        parts = [
            p
            for m in self._messages
            for p in m.parts
            if isinstance(p, (FunctionCallPart, FunctionResponsePart)) and p.id == tool_call_id
        ]
        return self.prune_by_reference(parts, reason, change)

    def prune_ephemeral_tool_calls(self, change: ContextChange) -> bool:
        """
        Drop short-lived tool traffic older than the last few user turns.

        Once more than ``keep_user_turns`` user turns exist, everything before
        the ``keep_user_turns + 1``-th most recent one is scanned for parts of
        EPHEMERAL tools, calls that never got a response, and STATEFUL_REPLACE
        responses with no resource id (failed calls).
        """
        user_turns = [i for i, m in enumerate(self._messages) if m.is_user_turn]
        if len(user_turns) <= self.keep_user_turns:
            return False
        cutoff = user_turns[-(self.keep_user_turns + 1)]

        doomed: list[Part] = []
        for message in self._messages[:cutoff]:
            for part in message.parts:
                name = part_tool_name(part)
                if name is None:
                    continue
                behavior = self.behaviors.behavior_of(name)
                if behavior is ContextBehavior.EPHEMERAL:
                    doomed.append(part)
                elif isinstance(part, FunctionCallPart) and not self._tracker.linked_of(part):
                    doomed.append(part)
                elif (
                    isinstance(part, FunctionResponsePart)
                    and behavior is ContextBehavior.STATEFUL_REPLACE
                    and self.behaviors.resource_id_of(name, part.response) is None
                ):
                    doomed.append(part)
        if not doomed:
            return False
        return self.prune_by_reference(doomed, "ephemeral", change)

    def handle_stateful_replace(self, message: ChatMessage, change: ContextChange) -> bool:
        """Prune older responses (and their calls) for resources *message* now represents."""
        fresh: set[str] = set()
        for part in message.function_responses:
            if self.behaviors.behavior_of(part.name) is not ContextBehavior.STATEFUL_REPLACE:
                continue
            resource_id = self.behaviors.resource_id_of(part.name, part.response)
            if resource_id is not None:
                fresh.add(resource_id)
        if not fresh:
            return False

        stale: list[Part] = []
        for prior in self._messages:
            if prior is message:
                continue
            for part in prior.function_responses:
                if self.behaviors.behavior_of(part.name) is not ContextBehavior.STATEFUL_REPLACE:
                    continue
                if self.behaviors.resource_id_of(part.name, part.response) in fresh:
                    stale.append(part)
        if not stale:
            return False
        logger.debug("stateful_resources_superseded", resources=sorted(fresh), stale=len(stale))
        return self.prune_by_reference(stale, "stateful_replace", change)
