"""Explicit registration bundles for tools, middleware, hooks and jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Union

from .jobs import Job
from .middleware import Middleware
from .tools import Tool


@dataclass
class Hook:
    """Named entry point an outer server can route requests to.

    ``handler(request, agent)`` may be sync or async. ``session`` names the
    agent session the request belongs to, or is a callable deriving it from
    the request.
    """

    name: str
    handler: Callable[..., Any]
    session: Union[str, Callable[[Any], Any]] = "default"
    description: Optional[str] = None


@dataclass
class Utilities:
    tools: List[Tool] = field(default_factory=list)
    middleware: List[Middleware] = field(default_factory=list)
    hooks: List[Hook] = field(default_factory=list)
    jobs: List[Job] = field(default_factory=list)


def combine_utilities(bundles: Iterable[Utilities]) -> Utilities:
    """Concatenate bundles in order; earlier bundles come first."""
    combined = Utilities()
    for bundle in bundles:
        combined.tools.extend(bundle.tools)
        combined.middleware.extend(bundle.middleware)
        combined.hooks.extend(bundle.hooks)
        combined.jobs.extend(bundle.jobs)
    return combined


__all__ = ["Hook", "Utilities", "combine_utilities"]
