"""Per-call confirmations and the persisted per-function policy."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path

from toolchat.logging import get_logger
from toolchat.utils.helpers import atomic_write_text

logger = get_logger(__name__)


class FunctionConfirmation(str, Enum):
    """YES/NO apply to a single call; ALWAYS/NEVER are remembered per function name."""

    YES = "yes"
    NO = "no"
    ALWAYS = "always"
    NEVER = "never"

    @property
    def approved(self) -> bool:
        return self in (FunctionConfirmation.YES, FunctionConfirmation.ALWAYS)

    @property
    def persistent(self) -> bool:
        return self in (FunctionConfirmation.ALWAYS, FunctionConfirmation.NEVER)


class ConfirmationStore:
    """
    ALWAYS/NEVER preferences keyed by function name.

    Backed by a JSON file when *path* is given, in-memory otherwise.
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._policies: dict[str, FunctionConfirmation] = {}
        if path is not None:
            self._load()

    def get(self, name: str) -> FunctionConfirmation | None:
        return self._policies.get(name)

    def set(self, name: str, confirmation: FunctionConfirmation) -> None:
        if not confirmation.persistent:
            raise ValueError(f"Only ALWAYS/NEVER can be persisted, got {confirmation.name}")
        if self._policies.get(name) is confirmation:
            return
        self._policies[name] = confirmation
        logger.info("function_policy_saved", function=name, policy=confirmation.value)
        self._save()

    def forget(self, name: str) -> None:
        if self._policies.pop(name, None) is not None:
            self._save()

    def all(self) -> dict[str, FunctionConfirmation]:
        return dict(self._policies)

    def _load(self) -> None:
        assert self.path is not None
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self._policies = {
                name: FunctionConfirmation(value)
                for name, value in data.items()
                if FunctionConfirmation(value).persistent
            }
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("function_policies_unreadable", path=str(self.path), error=str(e))
            self._policies = {}

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {name: c.value for name, c in sorted(self._policies.items())}
        atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
