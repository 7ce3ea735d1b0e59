"""Configuration schema using Pydantic."""

import os
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_ENV_REF_RE = re.compile(r"^\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?$")


def _resolve_env(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references; unset variables are returned unchanged."""
    if not value:
        return value
    m = _ENV_REF_RE.match(value)
    if not m:
        return value
    return os.environ.get(m.group(1), value)


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetryConfig(Base):
    """Retry/backoff policy for backend calls."""

    max_retries: int = Field(default=5, ge=1)  # total attempts, not re-tries after the first
    initial_delay_s: float = Field(default=1.0, ge=0)
    max_delay_s: float = Field(default=30.0, ge=0)
    max_jitter_s: float = Field(default=0.5, ge=0)
    timeout_s: float = Field(default=120.0, gt=0)


class CredentialsConfig(Base):
    """Where API keys come from.

    Inline ``api_keys`` (which may reference env vars) are used first; the
    ``keys_file`` is appended when it exists.
    """

    api_keys: list[str] = Field(default_factory=list)
    keys_file: str = "~/.toolchat/api-keys.txt"
    api_base: str | None = None

    @property
    def resolved_api_keys(self) -> list[str]:
        return [k for k in (_resolve_env(raw) for raw in self.api_keys) if k]

    @property
    def keys_path(self) -> Path:
        return Path(self.keys_file).expanduser()


class PruningConfig(Base):
    """Automatic context pruning."""

    keep_user_turns: int = Field(default=2, ge=0)
    token_threshold: int = Field(default=250_000, gt=0)


class FailureTrackerConfig(Base):
    """Blocks a tool call that keeps failing with identical arguments."""

    max_failures: int = Field(default=3, ge=1)
    window_s: float = Field(default=300.0, gt=0)


class ToolsConfig(Base):
    enabled: bool = True
    confirmations_file: str = "~/.toolchat/confirmations.json"
    failures: FailureTrackerConfig = Field(default_factory=FailureTrackerConfig)

    @property
    def confirmations_path(self) -> Path:
        return Path(self.confirmations_file).expanduser()


class ChatConfig(Base):
    """Per-session generation defaults."""

    model: str = "gemini/gemini-2.5-flash"
    temperature: float = 1.0
    max_output_tokens: int = 8192
    max_iterations: int = Field(default=40, ge=1)
    workspace: str = "~/.toolchat/workspace"
    system_instruction: str | None = None  # appended to the built-in instructions
    core_instructions: bool = True

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser()


class Config(Base):
    """Root configuration for toolchat."""

    chat: ChatConfig = Field(default_factory=ChatConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    pruning: PruningConfig = Field(default_factory=PruningConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
