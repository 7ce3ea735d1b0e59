"""Conversation context: messages, dependency links and pruning."""

from toolchat.context.manager import ContextManager
from toolchat.context.message import ChatMessage, MessageRole, UsageMetadata
from toolchat.context.parts import (
    BlobPart,
    CodeExecutionResultPart,
    ExecutableCodePart,
    FunctionCallPart,
    FunctionResponsePart,
    Part,
    TextPart,
)
from toolchat.context.pruner import ContextChange

__all__ = [
    "BlobPart",
    "ChatMessage",
    "CodeExecutionResultPart",
    "ContextChange",
    "ContextManager",
    "ExecutableCodePart",
    "FunctionCallPart",
    "FunctionResponsePart",
    "MessageRole",
    "Part",
    "TextPart",
    "UsageMetadata",
]
