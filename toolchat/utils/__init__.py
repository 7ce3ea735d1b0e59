"""Utility functions for toolchat."""

from toolchat.utils.helpers import atomic_write_text, ensure_dir

__all__ = ["atomic_write_text", "ensure_dir"]
