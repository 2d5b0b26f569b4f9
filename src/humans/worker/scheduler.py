"""Scheduler for the periodic membership jobs.

Jobs:
- process_outbox: relay pending outbox events to the groupware system
- system_team_sync: reconcile the Volunteers, Metaleads and Board teams
- compliance_check: report members whose status lapsed through expired consents

Due jobs run one after another within a tick, never concurrently, so the
outbox always has a single drainer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from humans.core.config import Settings
    from humans.services.team_resources import TeamResourceSync

logger = logging.getLogger(__name__)


class JobRunStatus(str, Enum):
    """Outcome of one job execution."""

    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class JobContext:
    """What a handler receives besides the session factory.

    Attributes:
        settings: Application settings.
        team_resources: Groupware collaborator used by the outbox drain.
        now: Reference instant for the run.
        cancel_event: Set when the worker is shutting down.
    """

    settings: Settings
    team_resources: TeamResourceSync
    now: datetime
    cancel_event: asyncio.Event


JobHandler = Callable[
    ["async_sessionmaker[AsyncSession]", JobContext],
    Coroutine[Any, Any, dict[str, Any] | None],
]


@dataclass
class ScheduledJob:
    """Definition of a periodic job.

    Attributes:
        name: Job name, as used in HUMANS_WORKER__ENABLED_JOBS.
        handler: Async function doing the work.
        interval: Time between runs.
        enabled: Whether the job runs at all.
        last_run: When the job last started.
    """

    name: str
    handler: JobHandler
    interval: timedelta
    enabled: bool = True
    last_run: datetime | None = None


@dataclass
class JobRun:
    """Record of one job execution."""

    name: str
    status: JobRunStatus
    started_at: datetime
    finished_at: datetime
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


def build_default_schedules(settings: Settings) -> list[ScheduledJob]:
    """Schedules for the jobs enabled in settings."""
    from humans.worker.handlers.compliance import compliance_check_handler
    from humans.worker.handlers.outbox import process_outbox_handler
    from humans.worker.handlers.team_sync import system_team_sync_handler

    schedules = [
        ScheduledJob(
            name="process_outbox",
            handler=process_outbox_handler,
            interval=timedelta(seconds=settings.outbox.drain_interval_seconds),
        ),
        ScheduledJob(
            name="system_team_sync",
            handler=system_team_sync_handler,
            interval=timedelta(seconds=settings.team_sync.interval_seconds),
            enabled=settings.team_sync.enabled,
        ),
        ScheduledJob(
            name="compliance_check",
            handler=compliance_check_handler,
            interval=timedelta(seconds=settings.team_sync.compliance_check_interval_seconds),
        ),
    ]
    enabled_jobs = set(settings.worker.enabled_jobs)
    for schedule in schedules:
        schedule.enabled = schedule.enabled and schedule.name in enabled_jobs
    return schedules


class Scheduler:
    """Runs due jobs sequentially.

    Example:
        scheduler = Scheduler(session_factory, settings=settings, team_resources=sync)
        scheduler.add_default_schedules()
        runs = await scheduler.tick()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings,
        team_resources: TeamResourceSync,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._team_resources = team_resources
        self._cancel_event = cancel_event or asyncio.Event()
        self._schedules: dict[str, ScheduledJob] = {}

    @property
    def schedules(self) -> list[ScheduledJob]:
        return list(self._schedules.values())

    def add_schedule(self, schedule: ScheduledJob) -> None:
        self._schedules[schedule.name] = schedule
        logger.debug(
            "Added schedule: name=%s, interval=%s, enabled=%s",
            schedule.name,
            schedule.interval,
            schedule.enabled,
        )

    def add_default_schedules(self) -> None:
        for schedule in build_default_schedules(self._settings):
            self.add_schedule(schedule)
        logger.info(
            "Added default schedules: enabled=%s",
            [s.name for s in self.schedules if s.enabled],
        )

    def get_schedule(self, name: str) -> ScheduledJob:
        """Look up a schedule by job name.

        Raises:
            KeyError: If no such job is registered.
        """
        return self._schedules[name]

    async def tick(self, now: datetime | None = None) -> list[JobRun]:
        """Run every enabled job that is due.

        Returns:
            One JobRun per job that ran.
        """
        now = now or datetime.now(UTC)
        runs: list[JobRun] = []

        for schedule in self.schedules:
            if self._cancel_event.is_set():
                break
            if not schedule.enabled or not self._is_due(schedule, now):
                continue
            runs.append(await self.run_job(schedule, now))

        return runs

    async def run_job(self, schedule: ScheduledJob, now: datetime | None = None) -> JobRun:
        """Run one job now, whether or not it is due.

        A handler exception is logged and reported as a failed run; it
        does not propagate.
        """
        now = now or datetime.now(UTC)
        schedule.last_run = now
        context = JobContext(
            settings=self._settings,
            team_resources=self._team_resources,
            now=now,
            cancel_event=self._cancel_event,
        )

        started_at = datetime.now(UTC)
        logger.info("Job starting: name=%s", schedule.name)
        try:
            result = await schedule.handler(self._session_factory, context)
        except Exception as e:
            logger.exception("Job failed: name=%s, error=%s", schedule.name, e)
            return JobRun(
                name=schedule.name,
                status=JobRunStatus.FAILED,
                started_at=started_at,
                finished_at=datetime.now(UTC),
                error=str(e),
            )

        status = (
            JobRunStatus.CANCELLED
            if result and result.get("cancelled")
            else JobRunStatus.SUCCEEDED
        )
        run = JobRun(
            name=schedule.name,
            status=status,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            result=result,
        )
        logger.info(
            "Job finished: name=%s, status=%s, duration_ms=%d, result=%s",
            run.name,
            run.status.value,
            run.duration_ms,
            run.result,
        )
        return run

    def _is_due(self, schedule: ScheduledJob, now: datetime) -> bool:
        if schedule.last_run is None:
            return True
        return now >= schedule.last_run + schedule.interval
