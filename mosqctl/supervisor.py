"""Broker lifecycle supervision.

Two periodic checks watch the broker:

* the status check (default every 5s) counts consecutive "not running"
  results and failed status queries and restarts the broker once a
  threshold is reached;
* the health check (default every 30s) additionally confirms the broker pid
  is alive and restarts on any unhealthy result.

Both share one restart budget (``max_restart_attempts``). At most one
restart runs at a time; once the budget is spent the supervisor parks in
``failed`` until :meth:`ProcessSupervisor.force_restart` is called.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any

import psutil
from transitions import Machine

from .broker.process import BrokerHandle
from .config.const import (
    MIN_HEALTH_CHECK_INTERVAL,
    MIN_STATUS_CHECK_INTERVAL,
    STATUS_ERROR_RESTART_THRESHOLD,
    STATUS_FAILURE_RESTART_THRESHOLD,
)
from .config.model import ManagerConfig
from .errors import ManagerError

logger = logging.getLogger("mosqctl.supervisor")

class ProcessSupervisor:
    """State machine driving broker restarts from status and health checks."""

    if TYPE_CHECKING:
        fsm_state: str
        trigger: Callable[..., bool]

    STATE_STOPPED = "stopped"
    STATE_STARTING = "starting"
    STATE_RUNNING = "running"
    STATE_DEGRADED = "degraded"
    STATE_RESTARTING = "restarting"
    STATE_FAILED = "failed"

    def __init__(
        self,
        broker: BrokerHandle,
        config: ManagerConfig,
        *,
        settle_delay: float | None = None,
    ) -> None:
        self.broker = broker
        self.status_interval = max(MIN_STATUS_CHECK_INTERVAL, config.status_check_interval)
        self.health_interval = max(MIN_HEALTH_CHECK_INTERVAL, config.health_check_interval)
        self.max_restart_attempts = max(0, config.max_restart_attempts)
        self.settle_delay = config.restart_settle_delay if settle_delay is None else settle_delay

        self.consecutive_status_failures = 0
        self.restart_attempts = 0
        self.last_health_check: float | None = None
        self.last_error: str | None = None

        self._status_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[bool] | None = None
        self._stopping = False

        self.fsm_state = self.STATE_STOPPED
        self.machine = Machine(
            model=self,
            states=[
                self.STATE_STOPPED,
                self.STATE_STARTING,
                self.STATE_RUNNING,
                self.STATE_DEGRADED,
                self.STATE_RESTARTING,
                self.STATE_FAILED,
            ],
            initial=self.STATE_STOPPED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
        )
        self.machine.add_transition("launch", [self.STATE_STOPPED, self.STATE_FAILED], self.STATE_STARTING)
        self.machine.add_transition(
            "ready",
            [self.STATE_STARTING, self.STATE_RESTARTING, self.STATE_DEGRADED],
            self.STATE_RUNNING,
        )
        self.machine.add_transition("degrade", [self.STATE_STARTING, self.STATE_RUNNING], self.STATE_DEGRADED)
        self.machine.add_transition("recover", self.STATE_DEGRADED, self.STATE_RUNNING)
        self.machine.add_transition(
            "begin_restart",
            [self.STATE_STARTING, self.STATE_RUNNING, self.STATE_DEGRADED, self.STATE_FAILED],
            self.STATE_RESTARTING,
        )
        self.machine.add_transition("restart_failed", self.STATE_RESTARTING, self.STATE_DEGRADED)
        self.machine.add_transition(
            "give_up",
            [self.STATE_STARTING, self.STATE_RUNNING, self.STATE_DEGRADED, self.STATE_RESTARTING],
            self.STATE_FAILED,
        )
        self.machine.add_transition("halt", "*", self.STATE_STOPPED)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def monitoring(self) -> bool:
        return self._status_task is not None or self._health_task is not None

    @property
    def restart_in_flight(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    async def start(self, *, launch: bool = True) -> None:
        """Launch the broker (optionally) and begin both periodic checks."""
        self._stopping = False
        self.trigger("launch")
        if launch:
            try:
                await self.broker.start()
            except ManagerError as exc:
                self.last_error = str(exc)
                logger.error("Broker failed to start: %s", exc)
                self.trigger("degrade")
            else:
                self.trigger("ready")
        else:
            self.trigger("ready")
        self._start_timers()
        logger.info(
            "Supervisor started (status every %.1fs, health every %.1fs, max %d restarts)",
            self.status_interval,
            self.health_interval,
            self.max_restart_attempts,
        )

    async def stop(self) -> None:
        """Cancel both timers and wait for an in-flight restart to finish."""
        self._stopping = True
        await self._stop_timers()
        if self._restart_task is not None:
            await asyncio.gather(self._restart_task, return_exceptions=True)
            self._restart_task = None
        self.trigger("halt")
        logger.info("Supervisor stopped.")

    def _start_timers(self) -> None:
        if self.monitoring:
            return
        self._status_task = self._spawn_timer("status-check", self.status_interval, self.check_status)
        self._health_task = self._spawn_timer("health-check", self.health_interval, self.check_health)

    async def _stop_timers(self) -> None:
        tasks = [task for task in (self._status_task, self._health_task) if task is not None]
        self._status_task = None
        self._health_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn_timer(
        self,
        name: str,
        interval: float,
        check: Callable[[], Coroutine[Any, Any, Any]],
    ) -> asyncio.Task[None]:
        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await check()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Supervisor %s cycle failed", name)

        task = asyncio.create_task(_loop(), name=f"supervisor-{name}")
        task.add_done_callback(self._log_timer_exit)
        return task

    @staticmethod
    def _log_timer_exit(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Supervisor timer %s crashed: %s", task.get_name(), exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _checks_suspended(self) -> bool:
        return self.fsm_state == self.STATE_FAILED or self._stopping

    async def check_status(self) -> None:
        """One status-check cycle."""
        if self._checks_suspended():
            return

        try:
            status = await self.broker.get_status()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.consecutive_status_failures += 1
            self.last_error = str(exc)
            logger.warning(
                "Broker status query failed (%d consecutive): %s",
                self.consecutive_status_failures,
                exc,
            )
            await self._escalate(STATUS_ERROR_RESTART_THRESHOLD, f"status query failed: {exc}")
            return

        if not status.running:
            self.consecutive_status_failures += 1
            logger.warning("Broker not running (%d consecutive checks)", self.consecutive_status_failures)
            self.trigger("degrade")
            await self._escalate(STATUS_FAILURE_RESTART_THRESHOLD, "broker not running")
            return

        if self.consecutive_status_failures or self.restart_attempts:
            logger.info(
                "Broker running again; clearing %d failures and %d restart attempts",
                self.consecutive_status_failures,
                self.restart_attempts,
            )
            self.consecutive_status_failures = 0
            self.restart_attempts = 0
        self.trigger("recover")

    async def is_healthy(self) -> bool:
        """Broker reports running and, when a pid is known, that pid is alive."""
        try:
            status = await self.broker.get_status()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Health probe failed: %s", exc)
            return False
        if not status.running:
            return False
        if status.pid is None:
            return True
        # psutil.pid_exists sends signal 0 on POSIX; the process is untouched.
        return await asyncio.to_thread(psutil.pid_exists, status.pid)

    async def check_health(self) -> bool:
        """One health-check cycle; returns the health verdict."""
        if self._checks_suspended():
            return False

        healthy = await self.is_healthy()
        self.last_health_check = time.time()
        if healthy:
            if self.restart_attempts > 0:
                logger.info("Broker healthy; resetting restart counters")
                self.consecutive_status_failures = 0
                self.restart_attempts = 0
            self.trigger("recover")
            return True

        logger.warning("Broker health check failed")
        if self.restart_in_flight:
            logger.debug("Restart already in progress; leaving it to finish")
            return False
        if self.restart_attempts < self.max_restart_attempts:
            await self._attempt_restart("health check failed")
        else:
            self._give_up("health check failed")
        return False

    async def _escalate(self, threshold: int, reason: str) -> None:
        if self.consecutive_status_failures < threshold or self.restart_in_flight:
            return
        if self.restart_attempts < self.max_restart_attempts:
            await self._attempt_restart(reason)
        else:
            self._give_up(reason)

    def _give_up(self, reason: str) -> None:
        if self.fsm_state == self.STATE_FAILED or self.restart_in_flight:
            return
        self.trigger("give_up")
        self.last_error = reason
        logger.critical(
            "Broker unrecoverable after %d restart attempts (%s); manual restart required",
            self.restart_attempts,
            reason,
        )

    # ------------------------------------------------------------------
    # Restarts
    # ------------------------------------------------------------------

    async def _attempt_restart(self, reason: str, *, force: bool = False) -> bool:
        if self._stopping and not force:
            logger.debug("Supervisor stopping; not restarting (%s)", reason)
            return False
        if self.restart_in_flight:
            logger.debug("Restart already in progress; skipping (%s)", reason)
            return False

        self.restart_attempts += 1
        self.trigger("begin_restart")
        task = asyncio.create_task(self._run_restart(reason, self.restart_attempts), name="supervisor-restart")
        self._restart_task = task
        # A cancelled timer must not abort the restart; stop() waits for it.
        return await asyncio.shield(task)

    async def _run_restart(self, reason: str, attempt: int) -> bool:
        logger.warning(
            "Restarting broker (attempt %d/%d): %s",
            attempt,
            self.max_restart_attempts,
            reason,
        )
        try:
            await self.broker.restart()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.last_error = str(exc)
            logger.error("Broker restart attempt %d failed: %s", attempt, exc)
            self.trigger("restart_failed")
            return False

        await asyncio.sleep(self.settle_delay)
        if await self.is_healthy():
            self.consecutive_status_failures = 0
            self.trigger("ready")
            logger.info("Broker restart attempt %d succeeded", attempt)
            return True

        logger.warning("Broker still unhealthy after restart attempt %d", attempt)
        self.trigger("restart_failed")
        return False

    async def force_restart(self) -> bool:
        """Reset the restart budget and restart now, regardless of state."""
        logger.info("Forced broker restart requested")
        self.consecutive_status_failures = 0
        self.restart_attempts = 0
        return await self._attempt_restart("forced restart", force=True)

    # ------------------------------------------------------------------
    # Configuration / status
    # ------------------------------------------------------------------

    async def update_configuration(
        self,
        *,
        status_interval: float | None = None,
        health_interval: float | None = None,
        max_restart_attempts: int | None = None,
    ) -> dict[str, Any]:
        if status_interval is not None:
            self.status_interval = max(MIN_STATUS_CHECK_INTERVAL, status_interval)
        if health_interval is not None:
            self.health_interval = max(MIN_HEALTH_CHECK_INTERVAL, health_interval)
        if max_restart_attempts is not None:
            self.max_restart_attempts = max(0, max_restart_attempts)

        if self.monitoring:
            await self._stop_timers()
            self._start_timers()
        logger.info(
            "Supervisor reconfigured (status %.1fs, health %.1fs, max %d restarts)",
            self.status_interval,
            self.health_interval,
            self.max_restart_attempts,
        )
        return self.snapshot()

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.fsm_state,
            "monitoring": self.monitoring,
            "consecutive_status_failures": self.consecutive_status_failures,
            "restart_attempts": self.restart_attempts,
            "max_restart_attempts": self.max_restart_attempts,
            "restart_in_flight": self.restart_in_flight,
            "last_health_check": self.last_health_check,
            "last_error": self.last_error,
            "status_check_interval": self.status_interval,
            "health_check_interval": self.health_interval,
        }


__all__ = ["ProcessSupervisor"]
