"""Tool registry for dynamic tool management."""

import time
from typing import Any

from toolchat.context.parts import FunctionCallPart
from toolchat.errors import InvalidToolParamsError, ToolNotFoundError
from toolchat.logging import get_logger
from toolchat.tools.base import ContextBehavior, Tool, ToolExecutionResult

audit_log = get_logger("toolchat.audit")


class ToolRegistry:
    """
    Registry for chat tools.

    Besides executing calls, the registry answers the two questions the
    pruning engine asks about a tool: which :class:`ContextBehavior` it has,
    and which resource a given response refers to.
    """

    _TRUNCATE_KEYS = {"content", "text", "command", "query"}
    _REDACT_KEYS = {"password", "token", "api_key"}

    def __init__(self, audit: bool = True):
        self._tools: dict[str, Tool] = {}
        self._audit = audit

    def register(self, tool: Tool) -> None:
        """Register a tool. STATEFUL_REPLACE tools must project resource ids."""
        if tool.behavior is ContextBehavior.STATEFUL_REPLACE and type(tool).resource_id_of is Tool.resource_id_of:
            raise TypeError(f"Tool '{tool.name}' is STATEFUL_REPLACE but does not override resource_id_of()")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_declared_tools(self) -> list[dict[str, Any]]:
        """Get all tool declarations in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    def behavior_of(self, name: str) -> ContextBehavior:
        tool = self._tools.get(name)
        if tool is None:
            return ContextBehavior.EPHEMERAL
        return tool.behavior

    def resource_id_of(self, name: str, response: dict[str, Any]) -> str | None:
        """Project the resource id out of a stored function response.

        Error responses never carry a resource id.
        """
        tool = self._tools.get(name)
        if tool is None or tool.behavior is not ContextBehavior.STATEFUL_REPLACE:
            return None
        if "error" in response or "output" not in response:
            return None
        resource_id = tool.resource_id_of(response["output"])
        return str(resource_id) if resource_id is not None else None

    def _sanitize_params(self, params: dict) -> dict:
        """Sanitize parameters for audit logging (truncate/redact sensitive values)."""
        sanitized = {}
        for k, v in params.items():
            if k in self._REDACT_KEYS:
                sanitized[k] = f"<{len(str(v))} chars>"
            elif k in self._TRUNCATE_KEYS and isinstance(v, str) and len(v) > 200:
                sanitized[k] = v[:200] + "..."
            else:
                sanitized[k] = v
        return sanitized

    @staticmethod
    def _ensure_result(result: Any) -> ToolExecutionResult:
        if isinstance(result, ToolExecutionResult):
            return result
        return ToolExecutionResult(output=result)

    async def invoke(self, call: FunctionCallPart) -> ToolExecutionResult:
        """
        Execute a function call.

        Raises:
            ToolNotFoundError: No tool is registered under ``call.name``.
            InvalidToolParamsError: The arguments fail schema validation.
            Exception: Whatever the tool itself raises.
        """
        tool = self._tools.get(call.name)
        if not tool:
            raise ToolNotFoundError(
                f"Tool '{call.name}' not found. Available: {', '.join(self.tool_names)}"
            )

        params = dict(call.args or {})
        if self._audit:
            audit_log.info(
                "tool_call_started",
                tool=call.name,
                call_id=call.id,
                params=self._sanitize_params(params),
            )

        t0 = time.monotonic()
        try:
            errors = tool.validate_params(params)
            if errors:
                raise InvalidToolParamsError(call.name, errors)
            result = self._ensure_result(await tool.execute(**params))
        except Exception as e:
            if self._audit:
                audit_log.warning(
                    "tool_call_failed",
                    tool=call.name,
                    call_id=call.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=round((time.monotonic() - t0) * 1000, 1),
                )
            raise

        if self._audit:
            audit_log.info(
                "tool_call_completed",
                tool=call.name,
                call_id=call.id,
                duration_ms=round((time.monotonic() - t0) * 1000, 1),
                is_error=result.is_error,
                file_count=len(result.files),
            )
        return result

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
