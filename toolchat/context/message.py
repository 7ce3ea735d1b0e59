"""Chat messages and usage metadata."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping

from toolchat.context.parts import FunctionCallPart, FunctionResponsePart, Part, TextPart


class MessageRole(str, Enum):
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


@dataclass(frozen=True)
class UsageMetadata:
    """Token counts reported by the backend for one response."""

    prompt_token_count: int | None = None
    candidates_token_count: int | None = None
    cached_content_token_count: int | None = None
    thoughts_token_count: int | None = None
    total_token_count: int | None = None

    @property
    def effective_total(self) -> int | None:
        if self.total_token_count is not None:
            return self.total_token_count
        if self.prompt_token_count is None:
            return None
        return self.prompt_token_count + (self.candidates_token_count or 0)


Dependencies = Mapping[Part, tuple[Part, ...]]


@dataclass(frozen=True, eq=False)
class ChatMessage:
    """
    One turn of the conversation.

    ``dependencies`` holds the links recorded when this message was built:
    owner part -> dependent parts. The owner may live in this message or an
    earlier one (a tool message records call -> response links for calls that
    sit in the preceding model message).

    Messages are never mutated; pruning swaps in a replacement built with
    :meth:`with_parts`.
    """

    id: int
    role: MessageRole
    parts: tuple[Part, ...]
    model_id: str | None = None
    usage: UsageMetadata | None = None
    grounding: Mapping[str, Any] | None = None
    dependencies: Dependencies = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    elapsed_ms: int | None = None
    tool_feedback: bool = False

    def with_parts(self, parts: Iterable[Part], dependencies: Dependencies | None = None) -> ChatMessage:
        return replace(
            self,
            parts=tuple(parts),
            dependencies=dict(self.dependencies if dependencies is None else dependencies),
        )

    def with_dependencies(self, dependencies: Dependencies) -> ChatMessage:
        return replace(self, dependencies=dict(dependencies))

    @property
    def function_calls(self) -> list[FunctionCallPart]:
        return [p for p in self.parts if isinstance(p, FunctionCallPart)]

    @property
    def function_responses(self) -> list[FunctionResponsePart]:
        return [p for p in self.parts if isinstance(p, FunctionResponsePart)]

    @property
    def is_user_turn(self) -> bool:
        """A user message typed by the caller, not system-generated tool feedback."""
        return self.role is MessageRole.USER and not self.tool_feedback

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def index_of(self, part: Part) -> int:
        for i, p in enumerate(self.parts):
            if p is part:
                return i
        return -1

    def contains(self, part: Part) -> bool:
        return self.index_of(part) >= 0
