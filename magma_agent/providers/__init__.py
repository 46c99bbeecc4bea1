"""Provider adapters; importing this package registers all of them."""

from .base import (
    MAX_RETRIES,
    CompletionConfig,
    Provider,
    ProviderRegistry,
    backoff_delay,
    provider_registry,
)
from .anthropic import AnthropicProvider
from .google import GoogleProvider
from .groq import GroqProvider
from .openai import OpenAIProvider

__all__ = [
    "MAX_RETRIES",
    "CompletionConfig",
    "Provider",
    "ProviderRegistry",
    "backoff_delay",
    "provider_registry",
    "AnthropicProvider",
    "GoogleProvider",
    "GroqProvider",
    "OpenAIProvider",
]
