"""Base class for tools the model can call."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ContextBehavior(str, Enum):
    """How long a tool's call/response parts stay in context."""

    EPHEMERAL = "ephemeral"
    STATEFUL_REPLACE = "stateful_replace"
    PERSISTENT = "persistent"


@dataclass
class ToolExecutionResult:
    """
    Structured result of a tool call.

    ``output`` is what the model sees. ``files`` are secondary artifacts
    (generated images, exported documents) attached to the follow-up user
    feedback message. ``user_feedback`` is free text the tool wants to
    surface alongside the response.
    """

    output: Any = None
    files: list[Path] = field(default_factory=list)
    user_feedback: str | None = None
    is_error: bool = False


_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


class Tool(ABC):
    """
    Abstract base class for tools.

    Subclasses declare their JSON schema and context behaviour. Tools whose
    behaviour is STATEFUL_REPLACE also override :meth:`resource_id_of` so the
    registry can project a resource id out of each result.
    """

    behavior: ContextBehavior = ContextBehavior.EPHEMERAL

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON schema for the arguments."""
        ...

    @property
    def returns(self) -> dict[str, Any] | None:
        """Optional JSON schema of the raw output."""
        return None

    def resource_id_of(self, output: Any) -> str | None:
        """Return the id of the live resource *output* represents, if any."""
        return None

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        ...

    def to_schema(self) -> dict[str, Any]:
        """OpenAI function-calling schema, with the optional ``asynchronous`` flag added."""
        parameters = dict(self.parameters or {"type": "object"})
        parameters["properties"] = {
            **parameters.get("properties", {}),
            "asynchronous": {
                "type": "boolean",
                "description": "Set to true to run this call in the background and get a job id back immediately.",
            },
        }
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Validate *params* against :attr:`parameters`; returns a list of errors."""
        schema = self.parameters or {}
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema for tool '{self.name}' must be an object, got {schema.get('type')!r}")
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, value: Any, schema: dict[str, Any], path: str) -> list[str]:
        label = path or "parameter"
        expected = schema.get("type")
        py_type = _JSON_TYPES.get(expected) if expected else None
        if py_type is not None:
            if isinstance(value, bool) and expected in ("integer", "number"):
                return [f"{label} should be {expected}"]
            if not isinstance(value, py_type):
                return [f"{label} should be {expected}"]

        errors: list[str] = []
        if "enum" in schema and value not in schema["enum"]:
            errors.append(f"{label} must be one of {schema['enum']}")
        if expected == "object":
            props = schema.get("properties", {})
            for key in schema.get("required", []):
                if key not in value:
                    errors.append(f"missing required {path + '.' + key if path else key}")
            for key, item in value.items():
                if key in props:
                    errors.extend(self._validate(item, props[key], f"{path}.{key}" if path else key))
        elif expected == "array" and "items" in schema:
            for i, item in enumerate(value):
                errors.extend(self._validate(item, schema["items"], f"{label}[{i}]"))
        return errors
