"""Token estimation used when the backend has not reported usage."""

import json
from typing import Any, Iterable

from toolchat.context.parts import (
    BlobPart,
    CodeExecutionResultPart,
    ExecutableCodePart,
    FunctionCallPart,
    FunctionResponsePart,
    Part,
    TextPart,
)

# Lazy-loaded tiktoken encoder; None if tiktoken is not installed.
_tiktoken_encoder: Any = None
_tiktoken_loaded: bool = False

# Rough char-to-token ratio used only when tiktoken is unavailable
_CHARS_PER_TOKEN = 4


def _get_encoder() -> Any:
    """Return a tiktoken encoder, or None if tiktoken is unavailable."""
    global _tiktoken_encoder, _tiktoken_loaded
    if _tiktoken_loaded:
        return _tiktoken_encoder
    _tiktoken_loaded = True
    try:
        import tiktoken
        _tiktoken_encoder = tiktoken.get_encoding("cl100k_base")
    except Exception:
        _tiktoken_encoder = None
    return _tiktoken_encoder


def count_tokens(text: str) -> int:
    """Count tokens in *text*. Falls back to char/4 estimate if tiktoken is absent."""
    if not text:
        return 0
    enc = _get_encoder()
    if enc is not None:
        return len(enc.encode(text))
    return max(1, len(text) // _CHARS_PER_TOKEN)


def estimate_part_tokens(part: Part) -> int:
    if isinstance(part, TextPart):
        return count_tokens(part.text)
    if isinstance(part, FunctionCallPart):
        return count_tokens(part.name) + count_tokens(json.dumps(part.args, ensure_ascii=False, default=str))
    if isinstance(part, FunctionResponsePart):
        return count_tokens(part.name) + count_tokens(json.dumps(part.response, ensure_ascii=False, default=str))
    if isinstance(part, BlobPart):
        # binary payloads travel base64-encoded; tiktoken can't encode them
        return (len(part.data) * 4 // 3) // _CHARS_PER_TOKEN
    if isinstance(part, ExecutableCodePart):
        return count_tokens(part.code)
    if isinstance(part, CodeExecutionResultPart):
        return count_tokens(part.output)
    return 0


def estimate_parts_tokens(parts: Iterable[Part]) -> int:
    return sum(estimate_part_tokens(p) for p in parts)
