"""Chat tools module."""

from toolchat.tools.base import ContextBehavior, Tool, ToolExecutionResult
from toolchat.tools.registry import ToolRegistry

__all__ = ["ContextBehavior", "Tool", "ToolExecutionResult", "ToolRegistry"]
