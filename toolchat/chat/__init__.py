"""Chat sessions and the per-turn loop."""

from toolchat.chat.session import Chat, JobInfo
from toolchat.chat.turn_runner import TurnOptions, TurnResult, TurnRunner

__all__ = ["Chat", "JobInfo", "TurnOptions", "TurnResult", "TurnRunner"]
