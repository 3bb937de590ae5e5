"""
Long-running daemon owning the scheduler and the process lifecycle.

The daemon starts the scheduler (optionally after one immediate run), turns
SIGINT, SIGTERM and uncaught asynchronous errors into a graceful shutdown and
reports the exit status of the process.
"""

import asyncio
import logging
import signal
from enum import Enum
from typing import Any, Optional

from .config import AppConfig
from .errors import ConfigurationError
from .pipeline import PipelineRunner
from .scheduler import Scheduler
from .types import RunState

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class DaemonState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Daemon:
    """
    Run the pipeline on its cron schedule until the process is told to stop.

    Args:
        config: Application configuration; scheduling must be enabled.
        runner: Pipeline runner invoked on every tick.
        scheduler: Scheduler to drive; built from ``config.schedule`` when omitted.
    """

    def __init__(
        self,
        config: AppConfig,
        runner: PipelineRunner,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.state = RunState(
            cron_expression=config.schedule.cron,
            timezone=config.schedule.timezone,
        )
        if scheduler is None:
            scheduler = Scheduler(runner.run, config.schedule.cron, config.schedule.timezone)
        scheduler.state = self.state
        self.scheduler = scheduler
        self.status = DaemonState.IDLE
        self.exit_code = 0
        self._stopped: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Start scheduled operation.

        Raises:
            ConfigurationError: Scheduling is disabled in the configuration.
            InvalidSchedule: The cron expression or timezone is malformed.
        """
        if not self.config.schedule.enabled:
            raise ConfigurationError(
                "Scheduling is disabled. Set SCHEDULE_ENABLED=true to run as a daemon."
            )

        self.status = DaemonState.STARTING
        self._loop = asyncio.get_running_loop()
        self._stopped = asyncio.Event()
        logger.info("Starting feed digest daemon")
        self._install_handlers(self._loop)

        if self.config.schedule.run_on_start:
            logger.info("Running pipeline once on startup")
            await self.scheduler.execute_task()
            if self.state.is_shutting_down:
                logger.info("Shutdown requested during startup run, not starting scheduler")
                return

        try:
            self.scheduler.start()
        except BaseException:
            self._remove_handlers()
            self.status = DaemonState.IDLE
            raise

        self.status = DaemonState.ACTIVE
        logger.info("Daemon started; press Ctrl+C to stop")

    async def stop(self) -> int:
        """
        Shut the daemon down once; later calls only log a warning.

        In-flight pipeline runs are not awaited.

        Returns:
            0 when the shutdown sequence succeeded, 1 otherwise.
        """
        if self.state.is_shutting_down:
            logger.warning("Shutdown already in progress")
            return self.exit_code

        self.state.is_shutting_down = True
        self.status = DaemonState.SHUTTING_DOWN
        logger.info("Shutting down gracefully...")

        try:
            if self.scheduler.is_running:
                self.scheduler.stop()
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Error during shutdown")
            self.exit_code = 1

        self._remove_handlers()
        self.status = DaemonState.STOPPED
        if self._stopped is not None:
            self._stopped.set()
        logger.info("Daemon stopped")
        return self.exit_code

    async def serve(self) -> int:
        """Start the daemon and block until it has stopped.

        Returns:
            The process exit code.
        """
        await self.start()
        assert self._stopped is not None
        await self._stopped.wait()
        return self.exit_code

    def get_status(self) -> dict[str, Any]:
        status = self.state.model_dump()
        status["daemon_state"] = self.status.value
        status["is_running"] = self.status == DaemonState.ACTIVE
        if self.scheduler.is_running:
            status["next_runs"] = [t.isoformat() for t in self.scheduler.next_run_times(3)]
        return status

    def request_stop(self, reason: str) -> None:
        """Schedule ``stop()`` from a synchronous callback."""
        logger.info("Received %s, initiating graceful shutdown...", reason)
        if self._loop is None:
            return
        self._stop_task = self._loop.create_task(self.stop())

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        error = context.get("exception")
        logger.error(
            "Uncaught asynchronous error: %s",
            context.get("message", "unknown"),
            exc_info=error,
        )
        self.request_stop("uncaught error")

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.warning("Cannot install handler for %s on this platform", sig.name)
        loop.set_exception_handler(self._handle_loop_exception)

    def _remove_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in SHUTDOWN_SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("No handler to remove for %s", sig.name)
        self._loop.set_exception_handler(None)
