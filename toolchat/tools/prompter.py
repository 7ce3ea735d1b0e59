"""Asking the user whether proposed tool calls may run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence

from toolchat.context.message import ChatMessage
from toolchat.context.parts import FunctionCallPart
from toolchat.tools.confirmation import FunctionConfirmation


@dataclass
class PromptResult:
    """Decisions keyed by call id. Calls missing from the map count as NO."""

    confirmations: dict[str, FunctionConfirmation] = field(default_factory=dict)
    comment: str | None = None
    cancelled: bool = False


class FunctionPrompter(Protocol):
    async def prompt(self, message: ChatMessage, calls: Sequence[FunctionCallPart]) -> PromptResult: ...


class AutoApprovePrompter:
    """Headless prompter that answers every call with the same decision."""

    def __init__(self, decision: FunctionConfirmation = FunctionConfirmation.YES, comment: str | None = None):
        self.decision = decision
        self.comment = comment
        self.prompts = 0

    async def prompt(self, message: ChatMessage, calls: Sequence[FunctionCallPart]) -> PromptResult:
        self.prompts += 1
        return PromptResult(
            confirmations={call.id: self.decision for call in calls if call.id},
            comment=self.comment,
        )
