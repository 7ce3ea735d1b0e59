"""Augmented workspace: request-scoped parts that are never stored in history."""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, Sequence, runtime_checkable

from toolchat.context.message import ChatMessage, MessageRole
from toolchat.context.parts import (
    FunctionCallPart,
    FunctionResponsePart,
    Part,
    TextPart,
    describe_part,
    part_size_bytes,
    part_tool_name,
)
from toolchat.context.resources import stateful_resources_overview
from toolchat.context.tokens import estimate_part_tokens
from toolchat.logging import get_logger
from toolchat.tools.base import ContextBehavior

logger = get_logger(__name__)

WORKSPACE_HEADER = (
    "--- Augmented Workspace Context ---\n"
    "The following parts describe the current state of the workspace. They are "
    "regenerated on every request and are not part of the conversation history."
)
WORKSPACE_FOOTER = "--- End of Augmented Workspace Context ---"


@runtime_checkable
class WorkspaceProvider(Protocol):
    name: str

    async def get_parts(self, chat: Any) -> list[Part]: ...


class FileListingProvider:
    """Lists the files in a directory, so the model knows what exists."""

    name = "file_listing"

    def __init__(self, root: Path, max_entries: int = 200):
        self.root = root
        self.max_entries = max_entries

    async def get_parts(self, chat: Any) -> list[Part]:
        if not self.root.is_dir():
            return []
        entries = sorted(
            str(p.relative_to(self.root)) + ("/" if p.is_dir() else "")
            for p in self.root.iterdir()
            if not p.name.startswith(".")
        )
        shown = entries[: self.max_entries]
        lines = [f"Workspace directory: {self.root}", *shown]
        if len(entries) > len(shown):
            lines.append(f"... ({len(entries) - len(shown)} more)")
        return [TextPart("\n".join(lines))]


def format_age(seconds: float) -> str:
    """Compact age: ``42s``, ``3m 5s``, ``2h 10m``, ``1d 4h``."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{max(seconds, 0)}s"
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h" if hours else f"{days}d"
    if hours:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    return f"{minutes}m {secs}s" if secs else f"{minutes}m"


_BEHAVIOR_CODES = {
    ContextBehavior.EPHEMERAL: "E",
    ContextBehavior.STATEFUL_REPLACE: "S",
    ContextBehavior.PERSISTENT: "P",
}


class ContextSummaryProvider:
    """
    A table of every part in context, so the model can ask for precise prunes.

    Each row carries the part's pruning id (the tool call id for call and
    response parts, ``message_id/part_index`` otherwise), its age, its
    context behaviour and its share of the estimated token total.
    """

    name = "context_summary"

    async def get_parts(self, chat: Any) -> list[Part]:
        context = chat.context
        messages = context.get_context()
        behaviors = context.pruner.behaviors
        header = (
            f"# Context Summary\n"
            f"Messages: {len(messages)}, tokens: {context.token_count} of {context.token_threshold} "
            f"({context.context_window_usage():.1%})"
        )
        if not messages:
            return [TextPart(header)]

        estimates = {id(p): estimate_part_tokens(p) for m in messages for p in m.parts}
        total = sum(estimates.values()) or 1
        now = datetime.now()
        lines = [
            header,
            "Types: E=ephemeral tool, S=stateful tool, P=persistent tool, O=other",
            "",
            "| Msg | Role | Age | Type | Pruning ID | Content | Tokens | Share | Size (KB) |",
            "|---:|:---|:---|:---|:---|:---|---:|---:|---:|",
        ]
        for message in messages:
            role = message.role.value + (" (feedback)" if message.tool_feedback else "")
            age = format_age((now - message.created_at).total_seconds())
            for index, part in enumerate(message.parts):
                tool = part_tool_name(part)
                type_code = _BEHAVIOR_CODES[behaviors.behavior_of(tool)] if tool else "O"
                if isinstance(part, (FunctionCallPart, FunctionResponsePart)) and part.id:
                    pruning_id = part.id
                else:
                    pruning_id = f"{message.id}/{index}"
                tokens = estimates[id(part)]
                lines.append(
                    f"| {message.id if index == 0 else ''} | {role if index == 0 else ''} "
                    f"| {age if index == 0 else ''} | {type_code} | {pruning_id} "
                    f"| {describe_part(part).replace('|', '/')} | {tokens} | {tokens / total:.1%} "
                    f"| {part_size_bytes(part) / 1024:.1f} |"
                )
        return [TextPart("\n".join(lines))]


class StatefulResourcesProvider:
    """Lists the stateful resources in context and whether the disk copy still matches."""

    name = "stateful_resources"

    async def get_parts(self, chat: Any) -> list[Part]:
        context = chat.context
        statuses = await asyncio.to_thread(
            stateful_resources_overview, context.get_context(), context.pruner.behaviors
        )
        if not statuses:
            return [TextPart("No stateful resources currently tracked in context.")]
        lines = [
            "# Stateful Resources in Context",
            "Status compares the copy in context with the file on disk. "
            "Reload or prune any resource that is not VALID.",
            "",
            "| Status | Resource ID | Tool | Call ID | Ctx Size | Disk Size |",
            "| :--- | :--- | :--- | :--- | ---: | ---: |",
        ]
        for s in statuses:
            lines.append(
                f"| {s.status.value} | {s.resource_id} | {s.tool} | {s.tool_call_id or 'N/A'} "
                f"| {'' if s.context_size is None else s.context_size} "
                f"| {'' if s.disk_size is None else s.disk_size} |"
            )
        return [TextPart("\n".join(lines))]


async def collect_workspace_parts(providers: Sequence[WorkspaceProvider], chat: Any) -> list[Part]:
    """Run all providers concurrently. A failing provider contributes one error text part."""
    if not providers:
        return []
    results = await asyncio.gather(
        *(provider.get_parts(chat) for provider in providers),
        return_exceptions=True,
    )
    parts: list[Part] = []
    for provider, result in zip(providers, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            logger.warning(
                "workspace_provider_failed",
                provider=getattr(provider, "name", type(provider).__name__),
                error=str(result),
                error_type=type(result).__name__,
            )
            parts.append(TextPart(f"Error getting workspace parts from {getattr(provider, 'name', '?')}: {result}"))
            continue
        parts.extend(result)
    return parts


def build_outbound_contents(messages: Sequence[ChatMessage], augmented: Sequence[Part]) -> list[ChatMessage]:
    """
    Content to send for one request.

    The conversation must open with a user message, so an empty one is
    prepended when needed. Augmented parts are wrapped in a user message
    placed just before the trailing user message (or appended if the
    history does not end with one).
    """
    contents = list(messages)
    if not contents or contents[0].role is not MessageRole.USER:
        contents.insert(0, ChatMessage(id=0, role=MessageRole.USER, parts=(TextPart(""),)))
    if not augmented:
        return contents

    workspace = ChatMessage(
        id=-1,
        role=MessageRole.USER,
        parts=(TextPart(WORKSPACE_HEADER), *augmented, TextPart(WORKSPACE_FOOTER)),
    )
    if contents[-1].role is MessageRole.USER:
        contents.insert(len(contents) - 1, workspace)
    else:
        contents.append(workspace)
    return contents
