"""
structlog setup for toolchat.

Backend errors and audit events can carry the API keys the resilient
client rotates through, so every event passes a redaction processor
before rendering. It masks Gemini and OpenAI-style keys, bearer tokens
and git personal access tokens wherever they appear in a string value,
and masks any value logged under a key-like field name outright.
"""

import json
import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


_SECRET_PATTERNS = [
    re.compile(r"AIza[0-9A-Za-z_-]{20,}"),          # Gemini / Google AI Studio
    re.compile(r"sk-[A-Za-z0-9_-]{10,}"),           # OpenAI-compatible backends
    re.compile(r"Bearer\s+[A-Za-z0-9_\-.]{10,}"),
    re.compile(r"ghp_[A-Za-z0-9]{10,}"),
    re.compile(r"glpat-[A-Za-z0-9_-]{10,}"),
]

# Field names whose values are credentials regardless of shape
_SECRET_FIELDS = frozenset({"api_key", "apikey", "authorization", "token", "password", "secret"})


def mask_secret(value: str) -> str:
    """Keep the first and last four characters of *value*.

    >>> mask_secret("AIzaSyExampleKey0123")
    'AIza****0123'
    """
    if len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def _redact_value(value: str) -> str:
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(lambda m: mask_secret(m.group(0)), value)
    return value


def _redact(key: str, value: Any) -> Any:
    if isinstance(value, str):
        return mask_secret(value) if key.lower() in _SECRET_FIELDS else _redact_value(value)
    if isinstance(value, (list, tuple)):
        return [_redact(key, v) for v in value]
    if isinstance(value, dict):
        return {k: _redact(str(k), v) for k, v in value.items()}
    return value


def _redact_event(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Mask credentials in every field of the event, nested lists and dicts included."""
    for key, val in event_dict.items():
        event_dict[key] = _redact(key, val)
    return event_dict


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Route the ``toolchat`` logger tree (``toolchat.audit`` included) to stderr.

    Args:
        json_output: One JSON object per line; otherwise structlog's console renderer.
        level: Level for the ``toolchat`` logger hierarchy.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _redact_event,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer(
            serializer=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, default=str, **kw)
        )
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger("toolchat")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))


def get_logger(name: str = "toolchat") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bound_context(**fields: Any) -> Iterator[None]:
    """Tag every event logged inside the block (a chat turn) with *fields*."""
    tokens = structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
