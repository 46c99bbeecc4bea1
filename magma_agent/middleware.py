"""Middleware pipeline run at fixed stages of an agent turn.

Middleware runs per content block: text stages see each text block as a
``str``, ``preToolExecution`` sees each :class:`ToolCall` and
``onToolExecution`` sees each :class:`ToolResult`. Within a block the
registered actions run in ``order`` and each receives the payload produced by
the previous one.
"""

from __future__ import annotations

import dataclasses
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .messages import Message, TextBlock, ToolCall, ToolCallBlock, ToolResult, ToolResultBlock
from .trace import TraceRecorder

logger = logging.getLogger(__name__)

MIDDLEWARE_MAX_RETRIES = 5

PRE_COMPLETION = "preCompletion"
ON_COMPLETION = "onCompletion"
PRE_TOOL_EXECUTION = "preToolExecution"
ON_TOOL_EXECUTION = "onToolExecution"
ON_MAIN_FINISH = "onMainFinish"
POST_PROCESS = "postProcess"

TRIGGERS = (
    PRE_COMPLETION,
    ON_COMPLETION,
    PRE_TOOL_EXECUTION,
    ON_TOOL_EXECUTION,
    ON_MAIN_FINISH,
    POST_PROCESS,
)

TEXT_TRIGGERS = frozenset({PRE_COMPLETION, ON_COMPLETION, ON_MAIN_FINISH, POST_PROCESS})

_middleware_ids = itertools.count(1)


@dataclass
class Middleware:
    """A user hook bound to one pipeline stage.

    ``id`` is assigned once at construction and keys the per-agent retry
    counters, so two middleware sharing an action still count separately.
    """

    trigger: str
    action: Callable[..., Any]
    name: Optional[str] = None
    critical: bool = False
    order: Optional[int] = None
    id: int = field(default_factory=lambda: next(_middleware_ids))

    def __post_init__(self) -> None:
        if self.trigger not in TRIGGERS:
            raise ValueError(f"Unknown middleware trigger '{self.trigger}'")
        if not self.name:
            self.name = getattr(self.action, "__name__", None) or f"middleware-{self.id}"


def sort_middleware(middleware: Iterable[Middleware]) -> List[Middleware]:
    """Stable sort by ``order`` ascending with unordered entries last."""
    return sorted(middleware, key=lambda m: (m.order is None, m.order if m.order is not None else 0))


@dataclass
class PipelineOutcome:
    """Result of running one stage over a message."""

    message: Message
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    @property
    def error_text(self) -> str:
        return "\n".join(self.errors)


class _StageAborted(Exception):
    """Internal signal that a critical middleware exhausted its retries."""


class MiddlewarePipeline:
    """Runs middleware with bounded retry bookkeeping.

    One pipeline belongs to one agent; ``retries`` maps middleware ids to the
    number of consecutive failures seen so far.
    """

    def __init__(self, *, max_retries: int = MIDDLEWARE_MAX_RETRIES, trace: Optional[TraceRecorder] = None) -> None:
        self.max_retries = max_retries
        self.trace = trace
        self.retries: Dict[int, int] = {}

    def reset(self) -> None:
        self.retries.clear()

    # --- payload helpers --------------------------------------------------
    def _relevant(self, trigger: str, block: Any) -> bool:
        if trigger in TEXT_TRIGGERS:
            return isinstance(block, TextBlock)
        if trigger == PRE_TOOL_EXECUTION:
            return isinstance(block, ToolCallBlock)
        if trigger == ON_TOOL_EXECUTION:
            return isinstance(block, ToolResultBlock)
        return False

    def _payload(self, block: Any) -> Any:
        if isinstance(block, TextBlock):
            return block.text
        if isinstance(block, ToolCallBlock):
            return block.tool_call
        return block.tool_result

    def _apply_return(self, payload: Any, returned: Any, mw: Middleware) -> Any:
        if returned is None:
            return payload
        if isinstance(payload, str) and isinstance(returned, str):
            return returned
        if isinstance(payload, ToolCall) and isinstance(returned, ToolCall):
            return returned
        if isinstance(payload, ToolResult):
            if isinstance(returned, ToolResult):
                return returned
            if isinstance(returned, (str, dict)):
                return dataclasses.replace(payload, result=returned)
        logger.warning(
            "Ignoring %s returned by middleware '%s' for %s payload",
            type(returned).__name__,
            mw.name,
            type(payload).__name__,
        )
        return payload

    def _rebuild(self, block: Any, payload: Any, errors: List[str]) -> Any:
        if isinstance(block, TextBlock):
            return dataclasses.replace(block, text=payload)
        if isinstance(block, ToolCallBlock):
            if errors:
                payload = dataclasses.replace(payload, error="\n".join(errors))
            return dataclasses.replace(block, tool_call=payload)
        if errors:
            payload = dataclasses.replace(payload, result="\n".join(errors), error=True)
        return dataclasses.replace(block, tool_result=payload)

    # --- execution --------------------------------------------------------
    async def _invoke(
        self,
        mw: Middleware,
        trigger: str,
        payload: Any,
        agent: Any,
        request_id: str,
    ) -> Any:
        """Run one middleware; returns the new payload or raises on failure."""
        if self.trace is not None:
            self.trace.start("middleware", request_id, span=mw.id, middleware=mw.name, trigger=trigger, payload=payload)
        try:
            returned = mw.action(payload, agent)
            if inspect.isawaitable(returned):
                returned = await returned
        except Exception as exc:
            if self.trace is not None:
                self.trace.end("middleware", request_id, "error", span=mw.id, middleware=mw.name, error=str(exc))
            raise
        result = self._apply_return(payload, returned, mw)
        if self.trace is not None:
            self.trace.end("middleware", request_id, "success", span=mw.id, middleware=mw.name, result=result)
        return result

    def _register_failure(self, mw: Middleware, trigger: str, exc: Exception) -> Optional[str]:
        """Count a failure; returns the error text to record, or ``None`` once exhausted."""
        count = self.retries.get(mw.id, 0) + 1
        self.retries[mw.id] = count
        text = str(exc) or exc.__class__.__name__
        if count < self.max_retries:
            logger.warning("An issue occurred running '%s' middleware '%s' - %s", trigger, mw.name, text)
            return text
        self.retries.pop(mw.id, None)
        logger.error(
            "%s middleware '%s' failed to recover after %d attempts",
            trigger,
            mw.name,
            self.max_retries,
        )
        if mw.critical:
            raise _StageAborted(text)
        return None

    async def run(
        self,
        trigger: str,
        message: Message,
        middleware: Iterable[Middleware],
        agent: Any,
        *,
        request_id: str = "",
    ) -> Optional[PipelineOutcome]:
        """Run every ``trigger`` middleware over the relevant blocks of ``message``.

        Returns ``None`` when a critical middleware exhausts its retries.
        Otherwise returns a new message in the original block order plus any
        recorded error texts.
        """
        stage = sort_middleware(m for m in middleware if m.trigger == trigger)
        if not stage:
            return PipelineOutcome(message=message)

        errors: List[str] = []
        blocks: List[Any] = []
        try:
            for block in message.blocks:
                if not self._relevant(trigger, block):
                    blocks.append(block)
                    continue
                payload = self._payload(block)
                block_errors: List[str] = []
                for mw in stage:
                    try:
                        payload = await self._invoke(mw, trigger, payload, agent, request_id)
                    except Exception as exc:
                        text = self._register_failure(mw, trigger, exc)
                        if text is not None:
                            block_errors.append(text)
                        continue
                    self.retries.pop(mw.id, None)
                blocks.append(self._rebuild(block, payload, block_errors))
                errors.extend(block_errors)
        except _StageAborted:
            return None

        return PipelineOutcome(message=Message(message.role, blocks, id=message.id), errors=errors)


__all__ = [
    "MIDDLEWARE_MAX_RETRIES",
    "PRE_COMPLETION",
    "ON_COMPLETION",
    "PRE_TOOL_EXECUTION",
    "ON_TOOL_EXECUTION",
    "ON_MAIN_FINISH",
    "POST_PROCESS",
    "TRIGGERS",
    "TEXT_TRIGGERS",
    "Middleware",
    "sort_middleware",
    "PipelineOutcome",
    "MiddlewarePipeline",
]
