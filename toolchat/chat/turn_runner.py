"""Core turn runner: alternate backend calls and tool execution until the model is done."""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence, cast

from toolchat.chat.instructions import build_system_instruction
from toolchat.chat.turn_events import (
    TURN_EVENT_NAMESPACE,
    TURN_EVENT_SCHEMA_VERSION,
    TURN_EVENT_TOOL_END,
    TURN_EVENT_TOOL_START,
    TURN_EVENT_TURN_END,
    TURN_EVENT_TURN_START,
    TurnEventCallback,
    TurnEventPayload,
    turn_event_kind,
)
from toolchat.context.manager import ContextManager
from toolchat.context.message import ChatMessage, MessageRole
from toolchat.context.parts import FunctionCallPart, Part, TextPart
from toolchat.context.workspace import WorkspaceProvider, build_outbound_contents, collect_workspace_parts
from toolchat.logging import get_logger
from toolchat.providers.base import GenerationConfig
from toolchat.providers.resilient import ResilientClient
from toolchat.status import ChatStatus, StatusManager
from toolchat.tools.orchestrator import ExecutedToolCall, FunctionProcessingResult, ToolOrchestrator

logger = get_logger(__name__)

NO_RESPONSE_TEXT = "[No response from model]"


@dataclass
class TurnOptions:
    model: str
    temperature: float = 1.0
    max_output_tokens: int = 8192
    max_iterations: int = 40
    tools_enabled: bool = True
    system_instruction: str | None = None
    core_instructions: bool = True
    workspace: Path | None = None


@dataclass
class TurnResult:
    turn_id: str
    iterations: int = 0
    tools_used: list[str] = field(default_factory=list)
    completed: bool = False
    stopped: bool = False
    max_iterations_reached: bool = False
    final_message: ChatMessage | None = None

    @property
    def text(self) -> str | None:
        return self.final_message.text if self.final_message else None


def _disabled_feedback(calls: Sequence[FunctionCallPart]) -> str:
    names = ", ".join(f"[{c.name} id=N/A] DISABLED" for c in calls)
    return f"User Feedback: {names}. Tool calling is disabled for this chat; answer without tools."


def _feedback_parts(result: FunctionProcessingResult) -> list[Part]:
    """User-role feedback for one tool round, empty when there is nothing to say."""
    parts: list[Part] = []
    if result.autopilot_count:
        parts.append(TextPart(
            f"User Feedback: {result.autopilot_count} function call(s) ran on autopilot under a saved policy."
        ))
    for call in result.denied:
        parts.append(TextPart(f"User Feedback: [{call.name} id={call.id or 'N/A'}] DENIED"))
    if result.comment:
        parts.append(TextPart(f"User Comment: {result.comment}"))
    for text in result.user_feedback:
        parts.append(TextPart(f"Tool Feedback: {text}"))
    parts.extend(result.artifacts)
    return parts


class TurnRunner:
    """
    Run one user turn.

    States: sending -> awaiting response -> done, or -> executing tools ->
    building feedback -> sending again. ``should_stop`` is checked at the top
    of every iteration.
    """

    def __init__(
        self,
        *,
        context: ContextManager,
        client: ResilientClient,
        orchestrator: ToolOrchestrator,
        options: TurnOptions,
        workspace_providers: Sequence[WorkspaceProvider] = (),
        status: StatusManager | None = None,
    ) -> None:
        self.context = context
        self.client = client
        self.orchestrator = orchestrator
        self.options = options
        self.workspace_providers = list(workspace_providers)
        self.status = status or client.status
        self._call_ids = itertools.count(1)

    def _assign_call_ids(self, parts: Sequence[Part]) -> list[Part]:
        assigned: list[Part] = []
        for part in parts:
            if isinstance(part, FunctionCallPart) and not part.id:
                part = part.with_id(f"call_{next(self._call_ids)}")
            assigned.append(part)
        return assigned

    def _generation_config(self) -> GenerationConfig:
        tools = self.orchestrator.registry.list_declared_tools() if self.options.tools_enabled else []
        return GenerationConfig(
            model=self.options.model,
            temperature=self.options.temperature,
            max_output_tokens=self.options.max_output_tokens,
            tools=tools,
            system_instruction=build_system_instruction(
                self.options.system_instruction,
                workspace=self.options.workspace,
                core=self.options.core_instructions,
            ),
        )

    def _append_tool_round(self, model_message: ChatMessage, result: FunctionProcessingResult) -> ChatMessage | None:
        last: ChatMessage | None = None
        if result.executed:
            tool_message = self.context.create_message(MessageRole.TOOL, [e.response for e in result.executed])
            for executed in result.executed:
                tool_message = self.context.link(tool_message, executed.call, [executed.response])
            self.context.add(tool_message)
            last = tool_message

        feedback = _feedback_parts(result)
        if feedback:
            feedback_message = self.context.create_message(MessageRole.USER, feedback, tool_feedback=True)
            for executed in result.executed:
                if executed.artifacts:
                    feedback_message = self.context.link(feedback_message, executed.response, executed.artifacts)
            self.context.add(feedback_message)
            last = feedback_message
        return last

    async def run(
        self,
        user_message: ChatMessage,
        *,
        chat: Any = None,
        interrupt: asyncio.Event | None = None,
        should_stop: Callable[[], bool] | None = None,
        on_event: TurnEventCallback | None = None,
        event_source: str = "turn_runner",
    ) -> TurnResult:
        """Append *user_message* and run the loop until the model stops calling tools."""
        result = TurnResult(turn_id=f"turn_{uuid.uuid4().hex[:12]}")
        event_sequence = 0
        end_extras: dict[str, Any] = {}

        async def _emit_event(payload: dict[str, Any]) -> None:
            nonlocal event_sequence
            if not on_event:
                return
            event_sequence += 1
            event = cast(TurnEventPayload, {
                "namespace": TURN_EVENT_NAMESPACE,
                "version": TURN_EVENT_SCHEMA_VERSION,
                "kind": turn_event_kind(payload["type"]),
                "turn_id": result.turn_id,
                "sequence": event_sequence,
                "timestamp_ms": int(time.time() * 1000),
                "source": event_source,
                **payload,
            })
            await on_event(event)

        async def _on_tool_start(call: FunctionCallPart) -> None:
            result.tools_used.append(call.name)
            self.status.set_executing_tool(call.name)
            logger.info("tool_call", tool=call.name, call_id=call.id)
            await _emit_event({
                "type": TURN_EVENT_TOOL_START,
                "iteration": result.iterations,
                "tool": call.name,
                "tool_call_id": call.id or "",
                "arguments": call.args,
            })

        async def _on_tool_end(executed: ExecutedToolCall) -> None:
            self.status.set_executing_tool(None)
            await _emit_event({
                "type": TURN_EVENT_TOOL_END,
                "iteration": result.iterations,
                "tool": executed.call.name,
                "tool_call_id": executed.call.id or "",
                "is_error": executed.failed,
                "artifact_count": len(executed.artifacts),
            })

        self.context.add(user_message)
        result.final_message = user_message
        await _emit_event({
            "type": TURN_EVENT_TURN_START,
            "initial_message_count": len(self.context),
            "max_iterations": self.options.max_iterations,
        })

        try:
            while True:
                if should_stop is not None and should_stop():
                    logger.info("turn_stopped", turn_id=result.turn_id, iteration=result.iterations)
                    result.stopped = True
                    break
                if result.iterations >= self.options.max_iterations:
                    logger.warning("turn_max_iterations_reached", max_iterations=self.options.max_iterations)
                    result.max_iterations_reached = True
                    break
                result.iterations += 1

                augmented = await collect_workspace_parts(self.workspace_providers, chat)
                contents = build_outbound_contents(self.context.get_context(), augmented)
                response = await self.client.generate(contents, self._generation_config(), interrupt)

                if not response.content:
                    logger.warning("llm_no_candidates", finish_reason=response.finish_reason)
                    placeholder = self.context.create_message(
                        MessageRole.MODEL,
                        [TextPart(NO_RESPONSE_TEXT)],
                        model_id=response.model or self.options.model,
                        usage=response.usage,
                    )
                    self.context.add(placeholder)
                    result.final_message = placeholder
                    end_extras["no_response"] = True
                    result.completed = True
                    break

                model_message = self.context.create_message(
                    MessageRole.MODEL,
                    self._assign_call_ids(response.content),
                    model_id=response.model or self.options.model,
                    usage=response.usage,
                    grounding=response.grounding,
                )
                self.context.add(model_message)
                result.final_message = model_message

                calls = model_message.function_calls
                if not calls:
                    result.completed = True
                    break

                if not self.options.tools_enabled:
                    feedback = self.context.create_message(
                        MessageRole.USER,
                        [TextPart(_disabled_feedback(calls))],
                        tool_feedback=True,
                    )
                    self.context.add(feedback)
                    result.final_message = feedback
                    end_extras["tools_disabled"] = True
                    result.completed = True
                    break

                processed = await self.orchestrator.process(model_message, _on_tool_start, _on_tool_end)
                end_extras["denied_count"] = end_extras.get("denied_count", 0) + len(processed.denied)
                last = self._append_tool_round(model_message, processed)
                if last is not None:
                    result.final_message = last
                if not processed.executed and not processed.denied:
                    result.completed = True
                    break
        finally:
            # keep MAX_RETRIES_REACHED visible to observers after the turn fails
            if self.status.status is not ChatStatus.MAX_RETRIES_REACHED:
                self.status.set_status(ChatStatus.IDLE)

        end_event: dict[str, Any] = {
            "type": TURN_EVENT_TURN_END,
            "iterations": result.iterations,
            "tool_count": len(result.tools_used),
            "completed": result.completed,
            "max_iterations_reached": result.max_iterations_reached,
            "stopped": result.stopped,
        }
        for key, value in end_extras.items():
            if value:
                end_event[key] = value
        await _emit_event(end_event)
        return result
