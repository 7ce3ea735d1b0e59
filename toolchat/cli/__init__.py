"""CLI module for toolchat."""
