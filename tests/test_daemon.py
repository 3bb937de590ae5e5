# pylint: disable=redefined-outer-name,protected-access
"""
Unit tests for the daemon lifecycle.

This module tests start preconditions, run-on-start, the single shutdown
sequence under concurrent stop() calls, exit codes and the status report.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from feed_digest.core.config import AppConfig, ScheduleSettings
from feed_digest.core.daemon import Daemon, DaemonState
from feed_digest.core.errors import ConfigurationError, InvalidSchedule

# --- Fixtures ---


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        schedule=ScheduleSettings(enabled=True, cron="0 */12 * * *", timezone="UTC"),
    )


@pytest.fixture
def runner() -> MagicMock:
    mock_runner = MagicMock()
    mock_runner.run = AsyncMock()
    return mock_runner


# --- Tests for start ---


def test_start_requires_scheduling_enabled(runner: MagicMock) -> None:
    """Daemon mode with scheduling disabled fails fast."""
    daemon = Daemon(AppConfig(), runner)

    with pytest.raises(ConfigurationError):
        asyncio.run(daemon.start())

    assert daemon.status == DaemonState.IDLE
    runner.run.assert_not_awaited()


def test_start_with_invalid_cron_propagates(runner: MagicMock) -> None:
    config = AppConfig(schedule=ScheduleSettings(enabled=True, cron="not-a-cron"))
    daemon = Daemon(config, runner)

    with pytest.raises(InvalidSchedule):
        asyncio.run(daemon.start())

    assert daemon.status == DaemonState.IDLE
    assert not daemon.scheduler.is_running


def test_start_activates_scheduler(config: AppConfig, runner: MagicMock) -> None:
    daemon = Daemon(config, runner)
    observed = {}

    async def scenario():
        await daemon.start()
        observed["status"] = daemon.status
        observed["active"] = daemon.state.is_scheduler_active
        await daemon.stop()

    asyncio.run(scenario())

    assert observed == {"status": DaemonState.ACTIVE, "active": True}
    assert daemon.status == DaemonState.STOPPED
    runner.run.assert_not_awaited()


def test_run_on_start_runs_pipeline_once(config: AppConfig, runner: MagicMock) -> None:
    config.schedule.run_on_start = True
    daemon = Daemon(config, runner)

    async def scenario():
        await daemon.start()
        await daemon.stop()

    asyncio.run(scenario())

    runner.run.assert_awaited_once()
    assert daemon.state.last_run_started_at is not None


def test_failed_startup_run_does_not_prevent_start(config: AppConfig, runner: MagicMock) -> None:
    config.schedule.run_on_start = True
    runner.run.side_effect = RuntimeError("feeds down")
    daemon = Daemon(config, runner)
    observed = {}

    async def scenario():
        await daemon.start()
        observed["status"] = daemon.status
        await daemon.stop()

    asyncio.run(scenario())

    assert observed["status"] == DaemonState.ACTIVE


def test_stop_during_startup_run_skips_scheduler(config: AppConfig, runner: MagicMock) -> None:
    """A termination request during the startup run is final; the scheduler never starts."""
    # --- Arrange ---
    config.schedule.run_on_start = True
    daemon = Daemon(config, runner)

    async def interrupted_run():
        daemon.request_stop("SIGTERM")
        await asyncio.sleep(0.01)

    runner.run.side_effect = interrupted_run

    # --- Act ---
    code = asyncio.run(daemon.serve())

    # --- Assert ---
    assert code == 0
    runner.run.assert_awaited_once()
    assert daemon.status == DaemonState.STOPPED
    assert not daemon.scheduler.is_running
    assert not daemon.state.is_scheduler_active


# --- Tests for stop ---


def test_concurrent_stop_runs_shutdown_once(
    config: AppConfig, runner: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    """Two concurrent stop() calls log one warning and stop the scheduler once."""
    # --- Arrange ---
    daemon = Daemon(config, runner)

    async def scenario():
        await daemon.start()
        with patch.object(daemon.scheduler, "stop", wraps=daemon.scheduler.stop) as stop_spy:
            codes = await asyncio.gather(daemon.stop(), daemon.stop())
        return codes, stop_spy.call_count

    # --- Act ---
    with caplog.at_level(logging.WARNING, logger="feed_digest.core.daemon"):
        codes, scheduler_stops = asyncio.run(scenario())

    # --- Assert ---
    warnings = [r for r in caplog.records if r.getMessage() == "Shutdown already in progress"]
    assert len(warnings) == 1
    assert scheduler_stops == 1
    assert codes == [0, 0]
    assert daemon.status == DaemonState.STOPPED
    assert daemon.state.is_shutting_down is True


def test_shutdown_error_gives_exit_code_one(config: AppConfig, runner: MagicMock) -> None:
    daemon = Daemon(config, runner)

    async def scenario():
        await daemon.start()
        real_stop = daemon.scheduler.stop
        with patch.object(daemon.scheduler, "stop", side_effect=RuntimeError("stuck")):
            code = await daemon.stop()
        real_stop()
        return code

    assert asyncio.run(scenario()) == 1
    assert daemon.status == DaemonState.STOPPED


# --- Tests for serve ---


def test_serve_returns_after_stop_request(config: AppConfig, runner: MagicMock) -> None:
    """A termination request releases serve() with exit code 0."""
    daemon = Daemon(config, runner)

    async def scenario():
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, daemon.request_stop, "SIGTERM")
        return await daemon.serve()

    assert asyncio.run(scenario()) == 0
    assert daemon.status == DaemonState.STOPPED
    assert not daemon.scheduler.is_running


def test_uncaught_async_error_triggers_shutdown(config: AppConfig, runner: MagicMock) -> None:
    daemon = Daemon(config, runner)

    async def scenario():
        loop = asyncio.get_running_loop()
        loop.call_later(
            0.01,
            loop.call_exception_handler,
            {"message": "Task exception was never retrieved", "exception": RuntimeError("boom")},
        )
        return await daemon.serve()

    assert asyncio.run(scenario()) == 0
    assert daemon.status == DaemonState.STOPPED


# --- Tests for get_status ---


def test_get_status_reports_state(config: AppConfig, runner: MagicMock) -> None:
    daemon = Daemon(config, runner)
    observed = {}

    async def scenario():
        await daemon.start()
        observed.update(daemon.get_status())
        await daemon.stop()

    asyncio.run(scenario())

    assert observed["daemon_state"] == "active"
    assert observed["is_running"] is True
    assert observed["is_scheduler_active"] is True
    assert observed["cron_expression"] == "0 */12 * * *"
    assert len(observed["next_runs"]) == 3
