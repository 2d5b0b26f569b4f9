"""Humans Worker service entry point.

This module provides the main Worker class that:
- Ticks the scheduler for the outbox drain, team sync and compliance jobs
- Handles graceful shutdown via SIGTERM/SIGINT
- Supports a one-shot mode for running jobs from an external cron

Shutdown sets the same event the jobs use for cancellation, so a running
outbox drain stops before its next event and commits what it has done.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from humans.db import build_engine, build_session_factory, to_async_url
from humans.services.team_resources import LoggingTeamResourceSync
from humans.worker.scheduler import JobRun, JobRunStatus, Scheduler

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from humans.core.config import Settings
    from humans.services.team_resources import TeamResourceSync

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        database_url: PostgreSQL connection URL (psycopg async format).
        poll_interval: Seconds between scheduler ticks.
        shutdown_timeout: Seconds to wait for graceful shutdown.
        enabled_jobs: Jobs the scheduler runs.
    """

    database_url: str
    poll_interval: float = 5.0
    shutdown_timeout: float = 30.0
    enabled_jobs: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        return cls(
            database_url=to_async_url(str(settings.database.url)),
            poll_interval=settings.worker.poll_interval_seconds,
            shutdown_timeout=settings.worker.shutdown_timeout_seconds,
            enabled_jobs=list(settings.worker.enabled_jobs),
        )


class Worker:
    """Background worker running the periodic membership jobs.

    Example:
        worker = Worker(WorkerConfig.from_settings(settings), settings)
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        settings: Settings,
        *,
        team_resources: TeamResourceSync | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.team_resources = team_resources or LoggingTeamResourceSync()
        self._shutdown_event = asyncio.Event()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._started_at: datetime | None = None
        self._jobs_succeeded = 0
        self._jobs_failed = 0

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def build_scheduler(self, session_factory: async_sessionmaker[AsyncSession]) -> Scheduler:
        scheduler = Scheduler(
            session_factory,
            settings=self.settings,
            team_resources=self.team_resources,
            cancel_event=self._shutdown_event,
        )
        scheduler.add_default_schedules()
        return scheduler

    async def start(self) -> None:
        """Start the worker and run jobs until shutdown is requested."""
        self._started_at = datetime.now(UTC)
        logger.info("Worker starting: enabled_jobs=%s", self.config.enabled_jobs)

        self._open_engine()
        try:
            await self._run_loop(self.build_scheduler(self._session_factory))
        finally:
            await self._close_engine()
            logger.info(
                "Worker stopped: succeeded=%d, failed=%d, uptime=%s",
                self._jobs_succeeded,
                self._jobs_failed,
                self._get_uptime(),
            )

    async def run_once(self, job_names: Sequence[str]) -> list[JobRun]:
        """Run the named jobs once, in order, and return their outcomes.

        Raises:
            KeyError: If a job name is unknown.
        """
        self._open_engine()
        try:
            scheduler = self.build_scheduler(self._session_factory)
            schedules = [scheduler.get_schedule(name) for name in job_names]
            runs = []
            for schedule in schedules:
                run = await scheduler.run_job(schedule)
                self._count(run)
                runs.append(run)
            return runs
        finally:
            await self._close_engine()

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Worker shutdown requested")
        self._shutdown_event.set()

    async def _run_loop(self, scheduler: Scheduler) -> None:
        while not self._shutdown_event.is_set():
            try:
                for run in await scheduler.tick():
                    self._count(run)
            except Exception as e:
                logger.exception("Error in worker loop: %s", e)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.poll_interval,
                )

    def _count(self, run: JobRun) -> None:
        if run.status == JobRunStatus.FAILED:
            self._jobs_failed += 1
        else:
            self._jobs_succeeded += 1

    def _open_engine(self) -> None:
        self._engine = build_engine(self.config.database_url, self.settings.database)
        self._session_factory = build_session_factory(self._engine)

    async def _close_engine(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _get_uptime(self) -> str:
        """Worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"


def _handle_shutdown(signum: int, shutdown_event: asyncio.Event) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    shutdown_event.set()


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m humans.worker",
        description="Run the Humans background jobs.",
    )
    parser.add_argument(
        "--once",
        metavar="JOB",
        nargs="+",
        help="Run the given jobs once and exit (process_outbox, system_team_sync, "
        "compliance_check)",
    )
    return parser.parse_args(argv)


async def _async_main(settings: Settings, args: argparse.Namespace) -> int:
    """Async entry point for the worker.

    Returns:
        Process exit code.
    """
    config = WorkerConfig.from_settings(settings)
    worker = Worker(config, settings)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _handle_shutdown, signum, worker.shutdown_event)

    if args.once:
        runs = await worker.run_once(args.once)
        return 1 if any(r.status == JobRunStatus.FAILED for r in runs) else 0

    worker_task = asyncio.create_task(worker.start())
    shutdown_waiter = asyncio.create_task(worker.shutdown_event.wait())
    done, _ = await asyncio.wait(
        {worker_task, shutdown_waiter}, return_when=asyncio.FIRST_COMPLETED
    )

    if worker_task in done:
        # Stopped on its own; re-raises if start() failed.
        shutdown_waiter.cancel()
        worker_task.result()
        return 0

    try:
        await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
    except TimeoutError:
        logger.warning("Worker did not stop within timeout, forcing shutdown")
        worker_task.cancel()
    return 0


def run(argv: Sequence[str] | None = None) -> NoReturn:
    """Run the worker process.

    Sets up logging, loads settings and runs
    the async worker loop (or the one-shot jobs given with --once).
    """
    from humans.core.settings import get_settings

    args = _parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("%s Worker starting: version=%s", settings.app_name, settings.app_version)
    logger.info("Runtime configuration: %s", settings.get_runtime_summary())

    try:
        exit_code = asyncio.run(_async_main(settings, args))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
        exit_code = 0
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("%s Worker shutdown complete", settings.app_name)
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
