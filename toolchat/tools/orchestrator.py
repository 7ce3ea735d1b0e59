"""Authorize and execute the function calls a model message proposes."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from toolchat.context.message import ChatMessage
from toolchat.context.parts import BlobPart, FunctionCallPart, FunctionResponsePart, Part, TextPart
from toolchat.errors import ToolBlockedError
from toolchat.logging import get_logger
from toolchat.tools.confirmation import ConfirmationStore, FunctionConfirmation
from toolchat.tools.failures import FailureTracker
from toolchat.tools.jobs import JobCallback, JobRunner, split_async_flag
from toolchat.tools.prompter import FunctionPrompter
from toolchat.tools.registry import ToolRegistry

logger = get_logger(__name__)


class ToolCallStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    DENIED = "denied"
    CANCELLED = "cancelled"


@dataclass
class ExecutedToolCall:
    call: FunctionCallPart
    response: FunctionResponsePart
    raw_result: Any = None
    artifacts: list[Part] = field(default_factory=list)
    user_feedback: str | None = None

    @property
    def failed(self) -> bool:
        return self.response.is_error


@dataclass
class ToolCallOutcome:
    call: FunctionCallPart
    status: ToolCallStatus
    confirmation: FunctionConfirmation | None = None


@dataclass
class FunctionProcessingResult:
    """What happened to every call of one model message."""

    executed: list[ExecutedToolCall] = field(default_factory=list)
    denied: list[FunctionCallPart] = field(default_factory=list)
    outcomes: list[ToolCallOutcome] = field(default_factory=list)
    comment: str | None = None
    autopilot: bool = True
    autopilot_count: int = 0

    @property
    def artifacts(self) -> list[Part]:
        return [a for e in self.executed for a in e.artifacts]

    @property
    def user_feedback(self) -> list[str]:
        return [e.user_feedback for e in self.executed if e.user_feedback]


ToolStartHook = Callable[[FunctionCallPart], Awaitable[None]]
ToolEndHook = Callable[[ExecutedToolCall], Awaitable[None]]


def _artifact_part(path: Path) -> Part:
    try:
        data = path.read_bytes()
    except OSError as e:
        logger.warning("tool_artifact_unreadable", path=str(path), error=str(e))
        return TextPart(f"[Could not attach {path.name}: {e}]")
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return BlobPart(mime_type=mime_type, data=data, display_name=path.name)


class ToolOrchestrator:
    """
    Applies persisted ALWAYS/NEVER policies, prompts once for the remaining
    calls, runs approved calls in order and turns every failure into an
    error-shaped function response.

    A call whose arguments carry ``asynchronous: true`` is started as a
    background job; its immediate response is the STARTED job and the
    finished job goes to ``on_job_done``.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        prompter: FunctionPrompter,
        confirmations: ConfirmationStore | None = None,
        failures: FailureTracker | None = None,
        on_job_done: JobCallback | None = None,
    ):
        self.registry = registry
        self.prompter = prompter
        self.confirmations = confirmations or ConfirmationStore()
        self.failures = failures or FailureTracker()
        self.jobs = JobRunner(registry, on_job_done)

    async def process(
        self,
        message: ChatMessage,
        on_tool_start: ToolStartHook | None = None,
        on_tool_end: ToolEndHook | None = None,
    ) -> FunctionProcessingResult:
        calls = message.function_calls
        result = FunctionProcessingResult()
        decisions: dict[FunctionCallPart, FunctionConfirmation | None] = {}

        pending: list[FunctionCallPart] = []
        for call in calls:
            policy = self.confirmations.get(call.name)
            if policy is not None:
                decisions[call] = policy
                if policy.approved:
                    result.autopilot_count += 1
            else:
                pending.append(call)

        if pending:
            result.autopilot = False
            answer = await self.prompter.prompt(message, pending)
            result.comment = answer.comment or None
            for call in pending:
                if answer.cancelled:
                    decisions[call] = None
                    continue
                confirmation = answer.confirmations.get(call.id or "", FunctionConfirmation.NO)
                decisions[call] = confirmation
                if confirmation.persistent:
                    self.confirmations.set(call.name, confirmation)
            if answer.cancelled:
                logger.info("tool_calls_cancelled", calls=[c.name for c in pending])

        for call in calls:
            confirmation = decisions[call]
            if confirmation is None:
                result.denied.append(call)
                result.outcomes.append(ToolCallOutcome(call, ToolCallStatus.CANCELLED))
                continue
            if not confirmation.approved:
                result.denied.append(call)
                result.outcomes.append(ToolCallOutcome(call, ToolCallStatus.DENIED, confirmation))
                continue

            if on_tool_start:
                await on_tool_start(call)
            executed = await self._execute(call)
            result.executed.append(executed)
            status = ToolCallStatus.FAILED if executed.failed else ToolCallStatus.EXECUTED
            result.outcomes.append(ToolCallOutcome(call, status, confirmation))
            if on_tool_end:
                await on_tool_end(executed)

        logger.info(
            "tool_calls_processed",
            executed=len(result.executed),
            denied=len(result.denied),
            autopilot_count=result.autopilot_count,
        )
        return result

    async def _execute(self, call: FunctionCallPart) -> ExecutedToolCall:
        invoke_call, background = split_async_flag(call)
        if self.failures.is_blocked(invoke_call):
            error = ToolBlockedError(
                f"'{call.name}' failed {self.failures.failure_count(invoke_call)} times with these arguments "
                f"in the last {int(self.failures.window_s)}s. Try different arguments or another approach."
            )
            logger.warning("tool_call_blocked", tool=call.name, call_id=call.id)
            return self._error_response(call, error)

        if background:
            job = self.jobs.start(invoke_call)
            return ExecutedToolCall(
                call=call,
                response=FunctionResponsePart(name=call.name, response={"output": job.to_dict()}, id=call.id),
                raw_result=job,
            )

        try:
            outcome = await self.registry.invoke(invoke_call)
        except Exception as e:
            self.failures.record_failure(invoke_call)
            return self._error_response(call, e)

        if outcome.is_error:
            self.failures.record_failure(invoke_call)
            response = {"error": str(outcome.output)}
        else:
            self.failures.record_success(invoke_call)
            response = {"output": outcome.output}
        return ExecutedToolCall(
            call=call,
            response=FunctionResponsePart(name=call.name, response=response, id=call.id),
            raw_result=outcome.output,
            artifacts=[_artifact_part(Path(p)) for p in outcome.files],
            user_feedback=outcome.user_feedback,
        )

    @staticmethod
    def _error_response(call: FunctionCallPart, error: Exception) -> ExecutedToolCall:
        return ExecutedToolCall(
            call=call,
            response=FunctionResponsePart(
                name=call.name,
                response={"error": f"{type(error).__name__}: {error}"},
                id=call.id,
            ),
        )
