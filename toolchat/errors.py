"""Exception hierarchy shared by the conversation engine."""

from __future__ import annotations


class ToolchatError(Exception):
    """Base class for all toolchat errors."""


class ConfigError(ToolchatError):
    """Raised when a configuration file cannot be read or validated."""


class NoCredentialsError(ToolchatError):
    """Raised when the credential pool is empty."""


class UnknownPartError(ToolchatError, LookupError):
    """A dependency link referenced a part that belongs to no message.

    This is a programming error and is never caught by the engine.
    """


class TurnInterruptedError(ToolchatError):
    """The in-flight turn was killed while waiting out a backoff delay."""


class ApiError(ToolchatError):
    """Base class for failures talking to the LLM backend."""


class TransientApiError(ApiError):
    """A retryable backend failure (rate limit, overload, timeout)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FatalApiError(ApiError):
    """A non-retryable backend failure; the turn is aborted immediately."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class MaxRetriesExceededError(ApiError):
    """All attempts failed with transient errors."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to get response from model after {attempts} attempts: {last_error}"
        )


class ToolNotFoundError(ToolchatError, LookupError):
    """The model asked for a tool that is not registered."""


class InvalidToolParamsError(ToolchatError, ValueError):
    """Tool arguments failed schema validation."""

    def __init__(self, tool: str, errors: list[str]):
        self.tool = tool
        self.errors = errors
        super().__init__(f"Invalid parameters for tool '{tool}': " + "; ".join(errors))


class ToolBlockedError(ToolchatError):
    """The failure tracker refused a call that keeps failing."""
