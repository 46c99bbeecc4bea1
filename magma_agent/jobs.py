"""Cron job registration backed by APScheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .errors import ConfigError

logger = logging.getLogger(__name__)


def validate_cron(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """Parse a standard 5-field crontab expression, raising :class:`ConfigError` if invalid."""
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except Exception as e:
        raise ConfigError(f"Invalid cron schedule '{expression}': {e}") from e


@dataclass
class Job:
    handler: Callable[..., Any]
    schedule: str
    timezone: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        validate_cron(self.schedule, self.timezone)
        if not self.name:
            self.name = getattr(self.handler, "__name__", None) or "job"


class JobScheduler:
    """Registers jobs on an :class:`AsyncIOScheduler` owned by one agent."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None) -> None:
        self._scheduler = scheduler
        self._job_ids: List[str] = []

    @property
    def scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def schedule(self, jobs: Iterable[Job], *, agent: Any = None, verbose: bool = False) -> List[str]:
        """Add ``jobs`` and start the scheduler; handlers receive ``agent`` when given."""
        scheduler = self.scheduler
        for job in jobs:
            added = scheduler.add_job(
                job.handler,
                trigger=validate_cron(job.schedule, job.timezone),
                args=[agent] if agent is not None else [],
                name=job.name,
            )
            self._job_ids.append(added.id)
            if verbose:
                logger.info("Job %s scheduled for %s", job.name, job.schedule)
        if self._job_ids and not scheduler.running:
            scheduler.start()
        return list(self._job_ids)

    def cancel(self) -> None:
        if self._scheduler is None:
            return
        for job_id in self._job_ids:
            if self._scheduler.get_job(job_id):
                self._scheduler.remove_job(job_id)
        self._job_ids.clear()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None


__all__ = ["validate_cron", "Job", "JobScheduler"]
