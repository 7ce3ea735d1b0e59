"""API key loading and rotation."""

from __future__ import annotations

import random
import threading
from pathlib import Path
from typing import Protocol, Sequence

from toolchat.errors import NoCredentialsError
from toolchat.logging import get_logger

logger = get_logger(__name__)


def parse_credentials(text: str) -> list[str]:
    """
    Parse a line-oriented key file.

    Blank lines and lines starting with ``#`` or ``//`` are skipped; a
    trailing ``//`` comment is stripped from a key line.
    """
    keys: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith("//"):
            continue
        if "//" in line:
            line = line.split("//", 1)[0].strip()
        if line:
            keys.append(line)
    return keys


def load_credentials(path: Path) -> list[str]:
    """Read keys from *path*; a missing file yields an empty list."""
    if not path.exists():
        logger.warning("credentials_file_missing", path=str(path))
        return []
    keys = parse_credentials(path.read_text(encoding="utf-8"))
    logger.info("credentials_loaded", path=str(path), count=len(keys))
    return keys


def key_fingerprint(key: str) -> str:
    """Last five characters of a key, safe to log and display."""
    return "..." + key[-5:] if len(key) > 5 else "*****"


class KeyRotation(Protocol):
    def next_key(self) -> str: ...


class RoundRobinRotation:
    """Hands out keys in order, starting at a random offset so parallel sessions spread load."""

    def __init__(self, keys: Sequence[str], start: int | None = None, rng: random.Random | None = None):
        self._keys = list(keys)
        self._lock = threading.Lock()
        if start is None:
            start = (rng or random).randrange(len(self._keys)) if self._keys else 0
        self._index = start

    def next_key(self) -> str:
        with self._lock:
            if not self._keys:
                raise NoCredentialsError("No API keys configured")
            key = self._keys[self._index % len(self._keys)]
            self._index = (self._index + 1) % len(self._keys)
            return key

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def fingerprints(self) -> list[str]:
        return [key_fingerprint(k) for k in self._keys]
