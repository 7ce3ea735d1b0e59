"""LLM provider abstraction module."""

from toolchat.providers.base import GenerationConfig, LLMProvider, LLMResponse
from toolchat.providers.credentials import RoundRobinRotation, load_credentials
from toolchat.providers.litellm_provider import LiteLLMProvider
from toolchat.providers.resilient import ResilientClient

__all__ = [
    "GenerationConfig",
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "ResilientClient",
    "RoundRobinRotation",
    "load_credentials",
]
