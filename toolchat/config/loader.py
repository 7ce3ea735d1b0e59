"""Configuration loading utilities."""

import json
import os
from pathlib import Path

from pydantic import ValidationError

from toolchat.config.schema import Config
from toolchat.errors import ConfigError
from toolchat.logging import get_logger
from toolchat.utils.helpers import atomic_write_text

logger = get_logger(__name__)


def get_config_path() -> Path:
    """Get the default configuration file path (``TOOLCHAT_CONFIG`` overrides it)."""
    override = os.environ.get("TOOLCHAT_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".toolchat" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.

    Raises:
        ConfigError: The file exists but is not valid JSON or fails validation.
    """
    path = config_path or get_config_path()
    if not path.exists():
        logger.debug("config_defaults_used", path=str(path))
        return Config()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Config.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"Invalid config at {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config at {path}: {e}") from e


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file, using camelCase keys."""
    path = config_path or get_config_path()
    data = config.model_dump(by_alias=True)
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")
