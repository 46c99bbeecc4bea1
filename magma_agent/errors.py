"""Exception taxonomy shared by the agent runtime."""

from __future__ import annotations

from typing import Any, Dict, Optional


class MagmaError(RuntimeError):
    """Base class for runtime errors raised by the agent."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(MagmaError):
    """Transport or API failure reported by a provider client."""


class RateLimitExhausted(ProviderError):
    """Raised once rate-limit retries have been used up."""


class RequestAborted(ProviderError):
    """Raised when the abort signal fires while a request is in flight."""


# ---------------------------------------------------------------------------
# Schema / configuration errors
# ---------------------------------------------------------------------------


class SchemaError(ValueError):
    """Malformed tool parameter schema."""


class ConfigError(ValueError):
    """Agent configuration failed to load or validate."""


class ToolNotFoundError(LookupError):
    """No registered tool matches a manual trigger request."""


# ---------------------------------------------------------------------------
# Middleware / tool errors
# ---------------------------------------------------------------------------


class MiddlewareError(MagmaError):
    """A single middleware action raised while processing a payload."""

    def __init__(
        self,
        message: str,
        *,
        trigger: Optional[str] = None,
        middleware: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.trigger = trigger
        self.middleware = middleware


class CatastrophicMiddlewareFailure(MiddlewareError):
    """A critical middleware exhausted its retries and aborted the stage."""


class ToolExecutionError(MagmaError):
    """Raised inside the tool engine; always converted into an error tool result."""


__all__ = [
    "MagmaError",
    "ProviderError",
    "RateLimitExhausted",
    "RequestAborted",
    "SchemaError",
    "ConfigError",
    "ToolNotFoundError",
    "MiddlewareError",
    "CatastrophicMiddlewareFailure",
    "ToolExecutionError",
]
