"""System instructions sent with every request."""

from __future__ import annotations

import platform
import time
from datetime import datetime
from pathlib import Path

CORE_INSTRUCTIONS = """# toolchat

You are a helpful assistant that can call tools.

## Context management
The conversation history is bounded and pruned automatically:
- Results of ephemeral tools (listings, searches) are dropped a few user turns after they were produced.
- For stateful tools (read_file, write_file) only the latest copy of each resource is kept. Reading a file again replaces the older copy.
- A function call and its response always leave the context together.

Each request carries an Augmented Workspace Context block after the history. It is regenerated
on every request: rely on it for the current context summary and the on-disk status of the
resources you have loaded. Reload any resource not marked VALID before relying on it.

## Background jobs
Any tool accepts `asynchronous: true`. The call then returns a job id at once and the result
arrives later as an "Async job result" message. Use it for slow work you do not need right away."""


def _runtime_section(workspace: Path | None) -> str:
    now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
    tz = time.strftime("%Z") or "UTC"
    system = platform.system()
    runtime = f"{'macOS' if system == 'Darwin' else system} {platform.machine()}, Python {platform.python_version()}"
    lines = ["## Runtime", runtime, f"Current time: {now} ({tz})"]
    if workspace is not None:
        lines.append(f"Workspace: {workspace.expanduser().resolve()}")
    return "\n".join(lines)


def build_system_instruction(
    extra: str | None = None,
    *,
    workspace: Path | None = None,
    core: bool = True,
) -> str | None:
    """
    Join the core instructions, the runtime section and *extra* (user-configured).

    Returns None when there is nothing to send.
    """
    sections: list[str] = []
    if core:
        sections.append(CORE_INSTRUCTIONS)
        sections.append(_runtime_section(workspace))
    if extra and extra.strip():
        sections.append(extra.strip())
    return "\n\n---\n\n".join(sections) or None
