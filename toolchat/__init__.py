"""toolchat - conversation engine for tool-calling LLM chats."""

__version__ = "0.1.0"
