# pylint: disable=redefined-outer-name,protected-access
"""
Unit tests for the cron scheduler.

This module tests cron validation, the Stopped/Running transitions, the
fire-and-forget tick and the failure isolation of scheduled runs.
"""

import asyncio

import pytest

from feed_digest.core.errors import InvalidSchedule
from feed_digest.core.scheduler import Scheduler, validate
from feed_digest.core.types import RunState

# --- Fixtures ---


@pytest.fixture
def state() -> RunState:
    return RunState()


async def _noop() -> None:
    return None


# --- Tests for validation ---


def test_start_rejects_malformed_expression(state: RunState) -> None:
    """A malformed expression raises InvalidSchedule and leaves the scheduler stopped."""
    # --- Arrange ---
    scheduler = Scheduler(_noop, "not-a-cron", "UTC", state)

    # --- Act ---
    with pytest.raises(InvalidSchedule) as exc_info:
        scheduler.start()

    # --- Assert ---
    assert exc_info.value.expression == "not-a-cron"
    assert not scheduler.is_running
    assert state.is_scheduler_active is False


def test_start_rejects_unknown_timezone(state: RunState) -> None:
    scheduler = Scheduler(_noop, "0 */12 * * *", "Mars/Olympus_Mons", state)

    with pytest.raises(InvalidSchedule):
        scheduler.start()

    assert not scheduler.is_running


@pytest.mark.parametrize("expression", ["0 */12 * * *", "30 8 * * 1-5", "*/5 * * * *"])
def test_validate_accepts_standard_expressions(expression: str) -> None:
    assert validate(expression, "Asia/Tokyo") is not None


@pytest.mark.parametrize("expression", ["", "61 * * * *", "* * * *", "0 25 * * *"])
def test_validate_rejects_bad_expressions(expression: str) -> None:
    with pytest.raises(InvalidSchedule):
        validate(expression, "UTC")


# --- Tests for start/stop ---


def test_start_and_stop_transitions(state: RunState) -> None:
    """start() moves to Running, stop() back to Stopped; a second stop() is a no-op."""
    scheduler = Scheduler(_noop, "0 */12 * * *", "Asia/Tokyo", state)
    observed = {}

    async def scenario():
        scheduler.start()
        observed["running"] = scheduler.is_running
        observed["active"] = state.is_scheduler_active
        scheduler.stop()
        scheduler.stop()

    asyncio.run(scenario())

    assert observed == {"running": True, "active": True}
    assert not scheduler.is_running
    assert state.is_scheduler_active is False
    assert state.cron_expression == "0 */12 * * *"
    assert state.timezone == "Asia/Tokyo"


def test_stop_before_start_is_noop() -> None:
    scheduler = Scheduler(_noop, "0 */12 * * *", "UTC")

    scheduler.stop()

    assert not scheduler.is_running


def test_next_run_times_follow_expression() -> None:
    scheduler = Scheduler(_noop, "0 */12 * * *", "UTC")

    fire_times = scheduler.next_run_times(3)

    assert len(fire_times) == 3
    assert fire_times == sorted(fire_times)
    assert all(t.minute == 0 and t.hour in (0, 12) for t in fire_times)
    assert len(set(fire_times)) == 3


# --- Tests for ticks ---


def test_tick_does_not_wait_for_previous_run(state: RunState) -> None:
    """Two ticks start two runs even while the first has not finished."""
    # --- Arrange ---
    release = None
    started = []

    async def slow_job() -> None:
        started.append(len(started) + 1)
        await release.wait()

    scheduler = Scheduler(slow_job, "0 */12 * * *", "UTC", state)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        await scheduler._tick()
        await scheduler._tick()
        await asyncio.sleep(0)
        running = len(started)
        release.set()
        await asyncio.gather(*scheduler._tasks)
        return running

    # --- Act ---
    running = asyncio.run(scenario())

    # --- Assert ---
    assert running == 2


def test_failed_run_is_logged_and_swallowed(state: RunState, caplog: pytest.LogCaptureFixture) -> None:
    async def failing_job() -> None:
        raise RuntimeError("boom")

    scheduler = Scheduler(failing_job, "0 */12 * * *", "UTC", state)

    asyncio.run(scheduler.execute_task())

    assert state.last_run_started_at is not None
    assert "Scheduled pipeline run failed" in caplog.text


def test_execute_task_runs_job_once(state: RunState) -> None:
    calls = []

    async def job() -> None:
        calls.append(1)

    scheduler = Scheduler(job, "0 */12 * * *", "UTC", state)

    asyncio.run(scheduler.execute_task())

    assert calls == [1]
