"""
Cron-driven scheduling of pipeline runs on top of APScheduler.

Every matching tick starts the job as its own asyncio task and returns at
once, so a slow run never delays the next tick. Whether overlapping runs are
allowed is decided by the job itself.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .errors import InvalidSchedule
from .types import RunState
from .utils import utc_now

logger = logging.getLogger(__name__)

JOB_ID = "feed_digest"

Job = Callable[[], Awaitable[Any]]


def validate(cron_expression: str, timezone: str) -> CronTrigger:
    """Build the trigger of a standard five-field cron expression.

    Raises:
        InvalidSchedule: If the expression or the timezone cannot be parsed.
    """
    try:
        return CronTrigger.from_crontab(cron_expression, timezone=timezone)
    except (ValueError, KeyError, TypeError) as e:
        raise InvalidSchedule(cron_expression, str(e)) from e


class Scheduler:
    """Invoke ``job`` on every tick of a cron expression.

    Args:
        job: Coroutine function started on each tick.
        cron_expression: Five-field crontab expression, e.g. ``0 */12 * * *``.
        timezone: IANA timezone the expression is evaluated in.
        state: Shared run state updated by the scheduler.
    """

    def __init__(
        self,
        job: Job,
        cron_expression: str,
        timezone: str,
        state: Optional[RunState] = None,
    ) -> None:
        self.job = job
        self.cron_expression = cron_expression
        self.timezone = timezone
        self.state = state or RunState()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._trigger: Optional[CronTrigger] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """Register the cron job; must be called from inside the event loop.

        Raises:
            InvalidSchedule: The expression or timezone is malformed; the
                scheduler stays stopped.
        """
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        trigger = validate(self.cron_expression, self.timezone)
        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop(), timezone=self.timezone)
        scheduler.add_job(self._tick, trigger, id=JOB_ID, coalesce=True, max_instances=1)
        scheduler.start()

        self._scheduler = scheduler
        self._trigger = trigger
        self.state.is_scheduler_active = True
        self.state.cron_expression = self.cron_expression
        self.state.timezone = self.timezone

        logger.info("Scheduler started: %s (%s)", self.cron_expression, self.timezone)
        for index, fire_time in enumerate(self.next_run_times(3), start=1):
            logger.info("Next run %d: %s", index, fire_time.isoformat())

    def stop(self) -> None:
        """Cancel the cron job; calling it on a stopped scheduler does nothing."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self.state.is_scheduler_active = False
        logger.info("Scheduler stopped")

    def next_run_times(self, count: int = 3) -> list[datetime]:
        trigger = self._trigger or validate(self.cron_expression, self.timezone)
        fire_times: list[datetime] = []
        previous: Optional[datetime] = None
        now = utc_now().astimezone(trigger.timezone)
        for _ in range(count):
            fire_time = trigger.get_next_fire_time(previous, previous or now)
            if fire_time is None:
                break
            fire_times.append(fire_time)
            previous = fire_time
        return fire_times

    async def _tick(self) -> None:
        task = asyncio.create_task(self.execute_task())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def execute_task(self) -> None:
        """Run the job once; failures are logged and never reach the timer."""
        started = utc_now()
        self.state.last_run_started_at = started
        logger.info("Scheduled pipeline run started")
        try:
            await self.job()
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Scheduled pipeline run failed")
            return
        logger.info(
            "Scheduled pipeline run finished in %.1fs",
            (utc_now() - started).total_seconds(),
        )
