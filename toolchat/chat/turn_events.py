"""Typed turn-event payloads emitted by TurnRunner to observers."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Literal, NotRequired, TypeAlias, TypedDict

TURN_EVENT_TURN_START = "turn_start"
TURN_EVENT_TOOL_START = "tool_start"
TURN_EVENT_TOOL_END = "tool_end"
TURN_EVENT_TURN_END = "turn_end"
TURN_EVENT_NAMESPACE = "toolchat.turn"
TURN_EVENT_SCHEMA_VERSION = 1

TurnEventType: TypeAlias = Literal[
    "turn_start",
    "tool_start",
    "tool_end",
    "turn_end",
]
TurnEventKind: TypeAlias = Literal[
    "turn.start",
    "tool.start",
    "tool.end",
    "turn.end",
]


class BaseTurnEvent(TypedDict):
    namespace: str
    version: int
    type: TurnEventType
    kind: TurnEventKind
    turn_id: str
    sequence: int
    timestamp_ms: int
    source: str


class TurnStartEvent(BaseTurnEvent):
    type: Literal["turn_start"]
    initial_message_count: int
    max_iterations: int


class ToolStartEvent(BaseTurnEvent):
    type: Literal["tool_start"]
    iteration: int
    tool: str
    tool_call_id: str
    arguments: dict[str, Any]


class ToolEndEvent(BaseTurnEvent):
    type: Literal["tool_end"]
    iteration: int
    tool: str
    tool_call_id: str
    is_error: bool
    artifact_count: int


class TurnEndEvent(BaseTurnEvent):
    type: Literal["turn_end"]
    iterations: int
    tool_count: int
    completed: bool
    max_iterations_reached: bool
    stopped: NotRequired[bool]
    denied_count: NotRequired[int]
    no_response: NotRequired[bool]
    tools_disabled: NotRequired[bool]


TurnEventPayload: TypeAlias = TurnStartEvent | ToolStartEvent | ToolEndEvent | TurnEndEvent
TurnEventCallback: TypeAlias = Callable[[TurnEventPayload], Awaitable[None]]


def turn_event_kind(event_type: str) -> str:
    """Hierarchical event kind for a flat event type (``tool_start`` -> ``tool.start``)."""
    return event_type.replace("_", ".", 1)


def turn_event_trace_fields(event: TurnEventPayload) -> dict[str, Any]:
    """Common trace fields for event logging sinks."""
    return {
        "namespace": event.get("namespace"),
        "version": event.get("version"),
        "source": event.get("source"),
        "turn_id": event.get("turn_id"),
        "sequence": event.get("sequence"),
    }
