"""Groq adapter; Groq speaks the OpenAI chat wire format."""

from __future__ import annotations

from typing import Any, Dict

try:  # pragma: no cover - import guard exercised in runtime
    from groq import AsyncGroq
except ImportError:  # pragma: no cover - covered via error path tests
    AsyncGroq = None  # type: ignore[assignment]

from .base import get_attr, provider_registry
from .openai import OpenAIProvider


class GroqProvider(OpenAIProvider):
    name = "groq"
    package = "groq"

    def create_client(self) -> Any:
        if AsyncGroq is None:
            raise self._missing_package()
        return AsyncGroq()

    def _stream_options(self) -> Dict[str, Any]:
        return {"stream": True}

    def _stream_usage(self, chunk: Any) -> Any:
        # usage for streamed responses is reported under x_groq on the final chunk
        return get_attr(chunk, "usage") or get_attr(get_attr(chunk, "x_groq"), "usage")


provider_registry.register_provider("groq", GroqProvider)


__all__ = ["GroqProvider"]
