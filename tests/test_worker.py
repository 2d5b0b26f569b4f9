"""Tests for the Humans background worker service.

Tests cover:
- Worker configuration from settings
- One-shot job runs
- Graceful shutdown
- Command-line parsing
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from humans.services.team_resources import LoggingTeamResourceSync
from humans.worker.main import (
    Worker,
    WorkerConfig,
    _async_main,
    _handle_shutdown,
    _parse_args,
    run,
)
from humans.worker.scheduler import JobRun, JobRunStatus


def make_worker(settings) -> Worker:
    return Worker(WorkerConfig.from_settings(settings), settings)


def make_run(status: JobRunStatus) -> JobRun:
    now = datetime.now(UTC)
    return JobRun(name="process_outbox", status=status, started_at=now, finished_at=now)


class TestWorkerConfig:
    """Tests for WorkerConfig."""

    def test_from_settings(self, settings):
        config = WorkerConfig.from_settings(settings)

        assert config.database_url.startswith("postgresql+psycopg://")
        assert config.poll_interval == settings.worker.poll_interval_seconds
        assert config.shutdown_timeout == settings.worker.shutdown_timeout_seconds
        assert set(config.enabled_jobs) == {
            "process_outbox",
            "system_team_sync",
            "compliance_check",
        }

    def test_defaults(self):
        config = WorkerConfig(database_url="postgresql+psycopg://localhost/test")

        assert config.poll_interval == 5.0
        assert config.shutdown_timeout == 30.0
        assert config.enabled_jobs == []


class TestWorkerInit:
    def test_defaults_to_logging_team_resources(self, settings):
        worker = make_worker(settings)

        assert isinstance(worker.team_resources, LoggingTeamResourceSync)
        assert not worker.shutdown_event.is_set()

    def test_scheduler_shares_shutdown_event(self, settings):
        worker = make_worker(settings)

        scheduler = worker.build_scheduler(MagicMock())

        assert scheduler._cancel_event is worker.shutdown_event
        assert {s.name for s in scheduler.schedules} == {
            "process_outbox",
            "system_team_sync",
            "compliance_check",
        }


class TestRunOnce:
    """Tests for Worker.run_once."""

    @pytest.fixture
    def engine(self):
        engine = MagicMock()
        engine.dispose = AsyncMock()
        with (
            patch("humans.worker.main.build_engine", return_value=engine),
            patch("humans.worker.main.build_session_factory", return_value=MagicMock()),
        ):
            yield engine

    @pytest.mark.asyncio
    async def test_engine_uses_database_settings(self, settings):
        engine = MagicMock()
        engine.dispose = AsyncMock()
        worker = make_worker(settings)

        with (
            patch("humans.worker.main.build_engine", return_value=engine) as build_engine,
            patch("humans.worker.main.build_session_factory") as build_session_factory,
            patch("humans.worker.handlers.outbox.process_outbox_handler", AsyncMock()),
        ):
            await worker.run_once(["process_outbox"])

        build_engine.assert_called_once_with(worker.config.database_url, settings.database)
        build_session_factory.assert_called_once_with(engine)
        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_runs_named_jobs_in_order(self, settings, engine):
        outbox = AsyncMock(return_value={"processed": 0})
        compliance = AsyncMock(return_value={"users_requiring_update": 0})
        worker = make_worker(settings)

        with (
            patch("humans.worker.handlers.outbox.process_outbox_handler", outbox),
            patch("humans.worker.handlers.compliance.compliance_check_handler", compliance),
        ):
            runs = await worker.run_once(["compliance_check", "process_outbox"])

        assert [r.name for r in runs] == ["compliance_check", "process_outbox"]
        assert all(r.status == JobRunStatus.SUCCEEDED for r in runs)
        assert worker._jobs_succeeded == 2
        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_job_raises(self, settings, engine):
        worker = make_worker(settings)

        with pytest.raises(KeyError):
            await worker.run_once(["rebuild_index"])

        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_job_is_counted(self, settings, engine):
        worker = make_worker(settings)

        with patch(
            "humans.worker.handlers.outbox.process_outbox_handler",
            AsyncMock(side_effect=RuntimeError("db down")),
        ):
            runs = await worker.run_once(["process_outbox"])

        assert runs[0].status == JobRunStatus.FAILED
        assert worker._jobs_failed == 1


class TestWorkerShutdown:
    """Tests for Worker graceful shutdown."""

    @pytest.mark.asyncio
    async def test_stop_sets_shutdown_event(self, settings):
        worker = make_worker(settings)

        await worker.stop()

        assert worker.shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_run_loop_exits_on_shutdown(self, settings):
        worker = make_worker(settings)
        worker.config.poll_interval = 0.02
        scheduler = MagicMock()
        scheduler.tick = AsyncMock(return_value=[make_run(JobRunStatus.SUCCEEDED)])

        async def delayed_shutdown():
            await asyncio.sleep(0.1)
            await worker.stop()

        await asyncio.wait_for(
            asyncio.gather(worker._run_loop(scheduler), delayed_shutdown()),
            timeout=2.0,
        )

        assert worker._jobs_succeeded >= 1

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, settings):
        worker = make_worker(settings)
        worker.config.poll_interval = 0.02
        scheduler = MagicMock()
        scheduler.tick = AsyncMock(side_effect=RuntimeError("unexpected"))

        async def delayed_shutdown():
            await asyncio.sleep(0.1)
            await worker.stop()

        await asyncio.wait_for(
            asyncio.gather(worker._run_loop(scheduler), delayed_shutdown()),
            timeout=2.0,
        )

        assert scheduler.tick.await_count >= 2

    def test_handle_shutdown_sets_event(self):
        event = asyncio.Event()

        _handle_shutdown(15, event)

        assert event.is_set()


class TestAsyncMain:
    @pytest.mark.asyncio
    async def test_once_mode_exit_code(self, settings):
        args = _parse_args(["--once", "process_outbox"])

        with patch.object(
            Worker, "run_once", AsyncMock(return_value=[make_run(JobRunStatus.FAILED)])
        ):
            assert await _async_main(settings, args) == 1

        with patch.object(
            Worker, "run_once", AsyncMock(return_value=[make_run(JobRunStatus.CANCELLED)])
        ):
            assert await _async_main(settings, args) == 0

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self, settings):
        """A worker that dies on startup does not leave main waiting for a signal."""
        with patch.object(Worker, "start", AsyncMock(side_effect=RuntimeError("db down"))):
            with pytest.raises(RuntimeError, match="db down"):
                await asyncio.wait_for(_async_main(settings, _parse_args([])), timeout=2.0)

    @pytest.mark.asyncio
    async def test_worker_that_returns_exits_cleanly(self, settings):
        with patch.object(Worker, "start", AsyncMock(return_value=None)):
            code = await asyncio.wait_for(_async_main(settings, _parse_args([])), timeout=2.0)

        assert code == 0

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_worker(self, settings):
        stopped = asyncio.Event()

        async def start(worker):
            await worker.stop()
            await asyncio.sleep(0.05)
            stopped.set()

        with patch.object(Worker, "start", start):
            code = await asyncio.wait_for(_async_main(settings, _parse_args([])), timeout=2.0)

        assert code == 0
        assert stopped.is_set()


class TestRun:
    """Tests for the process entry point."""

    def test_logs_runtime_summary(self, settings, caplog):
        with (
            patch("humans.core.settings.get_settings", return_value=settings),
            patch("humans.worker.main._async_main", AsyncMock(return_value=0)),
            caplog.at_level(logging.INFO, logger="humans.worker.main"),
            pytest.raises(SystemExit) as exc_info,
        ):
            run([])

        assert exc_info.value.code == 0
        assert "Runtime configuration" in caplog.text
        assert "enabled_jobs" in caplog.text
        assert str(settings.database.url) not in caplog.text


class TestParseArgs:
    def test_no_arguments_runs_loop(self):
        assert _parse_args([]).once is None

    def test_once_takes_job_names(self):
        args = _parse_args(["--once", "system_team_sync", "process_outbox"])
        assert args.once == ["system_team_sync", "process_outbox"]


class TestWorkerUptime:
    """Tests for Worker uptime calculation."""

    def test_uptime_not_started(self, settings):
        assert make_worker(settings)._get_uptime() == "0s"

    def test_uptime_minutes(self, settings):
        worker = make_worker(settings)
        worker._started_at = datetime.now(UTC) - timedelta(minutes=5, seconds=30)

        uptime = worker._get_uptime()
        assert "5m" in uptime

    def test_uptime_hours(self, settings):
        worker = make_worker(settings)
        worker._started_at = datetime.now(UTC) - timedelta(hours=2, minutes=30)

        assert worker._get_uptime().startswith("2h 30m")
