"""Configuration module for toolchat."""

from toolchat.config.loader import get_config_path, load_config, save_config
from toolchat.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
