"""Links between parts: call -> response, response -> derived artifact."""

from __future__ import annotations

from collections import defaultdict
from typing import Callable, Iterable, Sequence

from toolchat.context.message import ChatMessage
from toolchat.context.parts import Part, describe_part
from toolchat.errors import UnknownPartError


class DependencyTracker:
    """
    View over the dependency maps stored on a list of messages.

    Links are recorded on the message being built (see
    :meth:`ChatMessage.dependencies`) and read back across the whole context.
    """

    def __init__(self, messages: Callable[[], Sequence[ChatMessage]]):
        self._messages = messages

    def link(self, message: ChatMessage, owner: Part, dependents: Iterable[Part]) -> ChatMessage:
        """Return *message* with ``owner -> dependents`` recorded.

        Every part must belong to the context or to *message* itself.
        """
        dependents = tuple(dependents)
        known = self._known_parts(message)
        for part in (owner, *dependents):
            if part not in known:
                raise UnknownPartError(f"Cannot link {describe_part(part)}: it belongs to no message")
        deps = dict(message.dependencies)
        existing = deps.get(owner, ())
        deps[owner] = existing + tuple(d for d in dependents if d not in existing)
        return message.with_dependencies(deps)

    def linked_of(self, part: Part) -> list[Part]:
        """All parts directly linked to *part*, in either direction."""
        found: list[Part] = []
        for message in self._messages():
            for owner, dependents in message.dependencies.items():
                if owner is part:
                    found.extend(d for d in dependents if d not in found)
                elif part in dependents and owner not in found:
                    found.append(owner)
        return found

    def closure(self, parts: Iterable[Part]) -> set[Part]:
        """Transitive closure of *parts* over links in both directions."""
        adjacency: dict[Part, set[Part]] = defaultdict(set)
        for message in self._messages():
            for owner, dependents in message.dependencies.items():
                for dependent in dependents:
                    adjacency[owner].add(dependent)
                    adjacency[dependent].add(owner)

        result: set[Part] = set()
        stack = list(parts)
        while stack:
            part = stack.pop()
            if part in result:
                continue
            result.add(part)
            stack.extend(adjacency.get(part, ()))
        return result

    def _known_parts(self, pending: ChatMessage | None) -> set[Part]:
        known = {p for m in self._messages() for p in m.parts}
        if pending is not None:
            known.update(pending.parts)
        return known
