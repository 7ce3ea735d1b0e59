"""CLI commands for toolchat."""

import asyncio
import json
from pathlib import Path
from typing import Optional, Sequence

import typer

from toolchat import __version__
from toolchat.chat.session import Chat
from toolchat.chat.turn_events import TurnEventPayload, turn_event_trace_fields
from toolchat.config.loader import load_config
from toolchat.context.message import ChatMessage, MessageRole
from toolchat.context.parts import FunctionCallPart, describe_part
from toolchat.context.workspace import ContextSummaryProvider, FileListingProvider, StatefulResourcesProvider
from toolchat.errors import ApiError, NoCredentialsError, ToolchatError, TurnInterruptedError
from toolchat.logging import get_logger, setup_logging
from toolchat.providers.credentials import key_fingerprint, load_credentials
from toolchat.tools.confirmation import ConfirmationStore, FunctionConfirmation
from toolchat.tools.filesystem import ListDirTool, ReadFileTool, WriteFileTool
from toolchat.tools.prompter import PromptResult
from toolchat.tools.registry import ToolRegistry

logger = get_logger(__name__)

app = typer.Typer(
    name="toolchat",
    help="Tool-calling chat with a bounded, self-pruning context",
    no_args_is_help=True,
)

_CHOICES = {
    "y": FunctionConfirmation.YES,
    "n": FunctionConfirmation.NO,
    "a": FunctionConfirmation.ALWAYS,
    "v": FunctionConfirmation.NEVER,
}


class ConsolePrompter:
    """Asks on the terminal for each proposed call: [y]es, [n]o, [a]lways, ne[v]er, or [c]ancel."""

    async def prompt(self, message: ChatMessage, calls: Sequence[FunctionCallPart]) -> PromptResult:
        return await asyncio.to_thread(self._ask, calls)

    def _ask(self, calls: Sequence[FunctionCallPart]) -> PromptResult:
        result = PromptResult()
        for call in calls:
            args = json.dumps(call.args, ensure_ascii=False)
            typer.echo(typer.style(f"\n{call.name}({args})", bold=True))
            answer = typer.prompt("Run? [y/n/a/v/c]", default="y").strip().lower()[:1]
            if answer == "c":
                result.cancelled = True
                break
            result.confirmations[call.id or ""] = _CHOICES.get(answer, FunctionConfirmation.NO)
        comment = typer.prompt("Comment (optional)", default="", show_default=False).strip()
        result.comment = comment or None
        return result


async def _log_turn_event(event: TurnEventPayload) -> None:
    logger.debug(
        "turn_event",
        event_kind=event.get("kind"),
        **turn_event_trace_fields(event),
        tool=event.get("tool"),
        iteration=event.get("iteration"),
    )


def _build_registry(workspace: Path) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in (ListDirTool(workspace), ReadFileTool(workspace), WriteFileTool(workspace)):
        registry.register(tool)
    return registry


def _print_turn(chat: Chat, since_id: int) -> None:
    for message in chat.context.get_context():
        if message.id <= since_id or message.role is MessageRole.USER and not message.tool_feedback:
            continue
        if message.role is MessageRole.MODEL and message.text:
            typer.echo(message.text)
        else:
            labels = ", ".join(describe_part(p) for p in message.parts)
            typer.echo(typer.style(f"[{message.role.value}] {labels}", dim=True))


async def _chat_loop(chat: Chat) -> None:
    typer.echo(f"toolchat v{__version__} ({chat.runner.options.model}). /clear, /usage, /exit")
    while True:
        try:
            text = await asyncio.to_thread(input, "\n> ")
        except EOFError:
            break
        text = text.strip()
        if not text:
            continue
        if text in ("/exit", "/quit"):
            break
        if text == "/clear":
            chat.clear()
            typer.echo("Context cleared.")
            continue
        if text == "/usage":
            typer.echo(
                f"{len(chat.context)} messages, ~{chat.context.token_count} tokens "
                f"({chat.context_window_usage():.1%} of threshold)"
            )
            continue

        last_id = max((m.id for m in chat.context.get_context()), default=0)
        try:
            await chat.send_text(text)
        except TurnInterruptedError:
            typer.echo("Turn interrupted.")
        except ApiError as e:
            typer.echo(typer.style(f"Error: {e}", fg=typer.colors.RED))
            for record in chat.status.api_errors:
                typer.echo(f"  attempt {record.attempt} key {record.key_fingerprint}: {record.error}")
            continue
        _print_turn(chat, last_id)
    await chat.close()


@app.command()
def chat(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.json"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override the configured model"),
    no_tools: bool = typer.Option(False, "--no-tools", help="Disable tool calling"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """Start an interactive chat."""
    setup_logging(json_output=json_logs, level=log_level)
    try:
        config = load_config(config_path)
    except ToolchatError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if model:
        config.chat.model = model
    if no_tools:
        config.tools.enabled = False

    workspace = config.chat.workspace_path
    workspace.mkdir(parents=True, exist_ok=True)
    session = Chat.from_config(
        config,
        prompter=ConsolePrompter(),
        registry=_build_registry(workspace),
        workspace_providers=[ContextSummaryProvider(), StatefulResourcesProvider(), FileListingProvider(workspace)],
        on_event=_log_turn_event,
    )
    try:
        asyncio.run(_chat_loop(session))
    except NoCredentialsError:
        typer.echo(f"Error: no API keys. Add them to {config.credentials.keys_path}", err=True)
        raise typer.Exit(1)


@app.command()
def keys(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.json"),
) -> None:
    """Show fingerprints of the configured API keys."""
    config = load_config(config_path)
    inline = config.credentials.resolved_api_keys
    from_file = load_credentials(config.credentials.keys_path)
    typer.echo(f"Keys file: {config.credentials.keys_path}")
    if not inline and not from_file:
        typer.echo("No API keys configured.")
        raise typer.Exit(1)
    for source, pool in (("config", inline), ("file", from_file)):
        for key in pool:
            typer.echo(f"  {key_fingerprint(key)}  ({source})")


@app.command()
def policies(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.json"),
    forget: Optional[str] = typer.Option(None, "--forget", help="Drop the saved policy for a function"),
) -> None:
    """List or forget saved ALWAYS/NEVER tool policies."""
    config = load_config(config_path)
    store = ConfirmationStore(config.tools.confirmations_path)
    if forget:
        store.forget(forget)
        typer.echo(f"Forgot policy for {forget}.")
        return
    saved = store.all()
    if not saved:
        typer.echo("No saved policies.")
        return
    for name, policy in sorted(saved.items()):
        typer.echo(f"{name}: {policy.name}")


@app.command()
def version() -> None:
    """Show version."""
    typer.echo(f"toolchat v{__version__}")
