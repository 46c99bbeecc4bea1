"""Request identity and supersession for concurrent agent turns.

Each entry into the agent gets a fresh request id plus the ids of its
ancestors. Starting a request aborts every in-flight request that is not one
of its ancestors, so the latest top-level turn wins while continuations of
that turn keep running.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class AbortSignal:
    """One-shot cancellation flag that coroutines can await."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RequestContext:
    request_id: str
    parent_request_ids: Tuple[str, ...] = ()
    signal: AbortSignal = field(default_factory=AbortSignal)

    @property
    def lineage(self) -> Tuple[str, ...]:
        """Ancestor ids followed by this request's own id."""
        return self.parent_request_ids + (self.request_id,)


class CancellationManager:
    """Maps in-flight request ids to their abort signals."""

    def __init__(self) -> None:
        self._handles: Dict[str, AbortSignal] = {}

    def begin(self, parent_request_ids: Iterable[str] = ()) -> RequestContext:
        ancestors = tuple(parent_request_ids)
        for request_id in list(self._handles):
            if request_id in ancestors:
                continue
            logger.debug("Superseding in-flight request %s", request_id)
            self._handles.pop(request_id).abort("superseded")
        ctx = RequestContext(request_id=str(uuid.uuid4()), parent_request_ids=ancestors)
        self._handles[ctx.request_id] = ctx.signal
        return ctx

    def finish(self, ctx: RequestContext) -> None:
        self._handles.pop(ctx.request_id, None)

    def kill(self) -> None:
        for signal in self._handles.values():
            signal.abort("killed")
        self._handles.clear()

    def outstanding(self) -> List[str]:
        return list(self._handles)

    @property
    def processing(self) -> bool:
        return bool(self._handles)


async def run_cancellable(awaitable: Awaitable[Any], signal: Optional[AbortSignal]) -> Tuple[bool, Any]:
    """Await ``awaitable`` unless ``signal`` fires first.

    Returns ``(True, result)`` on completion and ``(False, None)`` when the
    signal won the race; the pending work is cancelled in that case.
    """
    if signal is None:
        return True, await awaitable
    if signal.aborted:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        return False, None

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise
    await _discard(waiter)
    if work in done and not signal.aborted:
        return True, work.result()
    await _discard(work)
    return False, None


async def _discard(task: "asyncio.Future[Any]") -> None:
    """Cancel ``task`` and wait for it to settle."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("Aborted request raised during cancellation", exc_info=True)


__all__ = [
    "AbortSignal",
    "RequestContext",
    "CancellationManager",
    "run_cancellable",
]
