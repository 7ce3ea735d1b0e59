"""Content parts: the smallest unit of a chat message.

Parts are immutable and compared/hashed by identity, so two parts with the
same payload are still distinct nodes in the dependency graph.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, TypeAlias


@dataclass(frozen=True, eq=False)
class TextPart:
    text: str


@dataclass(frozen=True, eq=False)
class FunctionCallPart:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None

    def with_id(self, call_id: str) -> FunctionCallPart:
        return replace(self, id=call_id)


@dataclass(frozen=True, eq=False)
class FunctionResponsePart:
    name: str
    response: dict[str, Any] = field(default_factory=dict)
    id: str | None = None

    @property
    def is_error(self) -> bool:
        return "error" in self.response


@dataclass(frozen=True, eq=False)
class BlobPart:
    mime_type: str
    data: bytes
    display_name: str | None = None


@dataclass(frozen=True, eq=False)
class ExecutableCodePart:
    code: str
    language: str = "python"


@dataclass(frozen=True, eq=False)
class CodeExecutionResultPart:
    output: str
    outcome: str = "ok"


Part: TypeAlias = (
    TextPart
    | FunctionCallPart
    | FunctionResponsePart
    | BlobPart
    | ExecutableCodePart
    | CodeExecutionResultPart
)


def part_tool_name(part: Part) -> str | None:
    """Return the tool name for call/response parts, else None."""
    if isinstance(part, (FunctionCallPart, FunctionResponsePart)):
        return part.name
    return None


def part_size_bytes(part: Part) -> int:
    """Approximate payload size of *part* in bytes."""
    if isinstance(part, TextPart):
        return len(part.text.encode("utf-8"))
    if isinstance(part, FunctionCallPart):
        return len(part.name) + len(json.dumps(part.args, ensure_ascii=False, default=str).encode("utf-8"))
    if isinstance(part, FunctionResponsePart):
        return len(part.name) + len(json.dumps(part.response, ensure_ascii=False, default=str).encode("utf-8"))
    if isinstance(part, BlobPart):
        return len(part.data)
    if isinstance(part, ExecutableCodePart):
        return len(part.code.encode("utf-8"))
    return len(part.output.encode("utf-8"))


def describe_part(part: Part) -> str:
    """Short human-readable label, used in logs and the CLI."""
    if isinstance(part, TextPart):
        text = part.text.replace("\n", " ")
        return f"text({text[:40]}{'...' if len(text) > 40 else ''})"
    if isinstance(part, FunctionCallPart):
        return f"call {part.name} id={part.id or 'N/A'}"
    if isinstance(part, FunctionResponsePart):
        return f"response {part.name} id={part.id or 'N/A'}"
    if isinstance(part, BlobPart):
        return f"blob {part.mime_type} ({len(part.data)} bytes)"
    if isinstance(part, ExecutableCodePart):
        return f"code {part.language}"
    return f"code result {part.outcome}"
