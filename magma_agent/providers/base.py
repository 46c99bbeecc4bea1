"""Provider base class, registry and the shared retry/abort loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from ..cancellation import AbortSignal, run_cancellable
from ..config import ProviderConfig
from ..errors import ProviderError, RateLimitExhausted, RequestAborted
from ..messages import Completion, Message, StreamChunk
from ..tools import Tool

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
MAX_BACKOFF_MS = 60000

StreamCallback = Callable[[StreamChunk], Any]


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry ``attempt``: ``min(2**attempt * 1000ms, 60000ms)``."""
    return min((2 ** attempt) * 1000, MAX_BACKOFF_MS) / 1000.0


async def sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def get_attr(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from an SDK object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    value = getattr(obj, name, default)
    return default if value is None else value


def status_code_of(exc: BaseException) -> Optional[int]:
    for candidate in (
        getattr(exc, "status_code", None),
        getattr(getattr(exc, "response", None), "status_code", None),
        getattr(getattr(exc, "response", None), "status", None),
        getattr(exc, "status", None),
        getattr(exc, "code", None),
    ):
        if isinstance(candidate, int):
            return candidate
    return None


async def emit_chunk(callback: Optional[StreamCallback], chunk: StreamChunk) -> None:
    if callback is None:
        return
    result = callback(chunk)
    if inspect.isawaitable(result):
        await result


@dataclass
class CompletionConfig:
    """Provider-agnostic request description."""

    provider_config: ProviderConfig
    messages: List[Message]
    tools: List[Tool] = field(default_factory=list)
    tool_choice: Optional[str] = None
    temperature: Optional[float] = 0
    max_tokens: Optional[int] = None
    stream: bool = False

    @property
    def model(self) -> str:
        return self.provider_config.model


class Provider:
    """Translate canonical requests into one vendor's wire format.

    Subclasses implement the converters plus ``_request``; the retry and
    abort handling in :meth:`make_completion_request` is shared.
    """

    name: str = ""
    package: str = ""

    # --- client management ------------------------------------------------
    def create_client(self) -> Any:
        raise NotImplementedError

    def get_client(self, provider_config: ProviderConfig) -> Any:
        if provider_config.client is None:
            provider_config.client = self.create_client()
        return provider_config.client

    def _missing_package(self) -> ProviderError:
        return ProviderError(f"{self.package} package not installed", details={"provider": self.name})

    # --- conversion -------------------------------------------------------
    def convert_messages(self, messages: List[Message]) -> Any:
        raise NotImplementedError

    def convert_tools(self, tools: List[Tool]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def convert_config(self, config: CompletionConfig) -> Dict[str, Any]:
        raise NotImplementedError

    def convert_stop_reason(self, stop_reason: Any) -> str:
        raise NotImplementedError

    # --- errors -----------------------------------------------------------
    def is_rate_limit_error(self, exc: BaseException) -> bool:
        return status_code_of(exc) == 429

    # --- requests ---------------------------------------------------------
    async def _request(self, config: CompletionConfig, on_stream_chunk: Optional[StreamCallback]) -> Completion:
        raise NotImplementedError

    async def make_completion_request(
        self,
        config: CompletionConfig,
        on_stream_chunk: Optional[StreamCallback] = None,
        attempt: int = 0,
        signal: Optional[AbortSignal] = None,
    ) -> Completion:
        """Issue the request, retrying rate-limit errors with exponential backoff.

        Raises :class:`RequestAborted` as soon as ``signal`` fires and
        :class:`RateLimitExhausted` once ``MAX_RETRIES`` retries are spent.
        Any other error from the vendor client propagates unchanged.
        """
        while True:
            if signal is not None and signal.aborted:
                raise RequestAborted("Request aborted", details={"provider": self.name})
            try:
                finished, completion = await run_cancellable(self._request(config, on_stream_chunk), signal)
            except Exception as exc:
                if signal is not None and signal.aborted:
                    raise RequestAborted("Request aborted", details={"provider": self.name}) from exc
                if not self.is_rate_limit_error(exc):
                    raise
                if attempt >= MAX_RETRIES:
                    raise RateLimitExhausted(
                        f"Rate limited after {MAX_RETRIES} attempts",
                        details={"provider": self.name, "status": 429},
                    ) from exc
                delay = backoff_delay(attempt)
                logger.warning("Rate limited by %s. Retrying after %dms.", self.name, int(delay * 1000))
                slept, _ = await run_cancellable(sleep(delay), signal)
                if not slept:
                    raise RequestAborted("Request aborted", details={"provider": self.name}) from exc
                attempt += 1
                continue
            if not finished:
                raise RequestAborted("Request aborted", details={"provider": self.name})
            return completion


class ProviderRegistry:
    """Maps provider names to :class:`Provider` implementations."""

    def __init__(self) -> None:
        self._provider_classes: Dict[str, Type[Provider]] = {}

    def register_provider(self, name: str, provider_cls: Type[Provider]) -> None:
        if not issubclass(provider_cls, Provider):
            raise TypeError(f"Provider {provider_cls!r} must inherit Provider")
        self._provider_classes[name] = provider_cls

    def get_provider_class(self, name: str) -> Optional[Type[Provider]]:
        return self._provider_classes.get(name)

    def names(self) -> List[str]:
        return list(self._provider_classes)

    def create_provider(self, name: str) -> Provider:
        provider_cls = self.get_provider_class(name)
        if provider_cls is None:
            raise ProviderError(f"Can not create provider with type {name}", details={"provider": name})
        return provider_cls()


provider_registry = ProviderRegistry()


__all__ = [
    "MAX_RETRIES",
    "MAX_BACKOFF_MS",
    "StreamCallback",
    "backoff_delay",
    "sleep",
    "get_attr",
    "status_code_of",
    "emit_chunk",
    "CompletionConfig",
    "Provider",
    "ProviderRegistry",
    "provider_registry",
]
