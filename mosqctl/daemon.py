#!/usr/bin/env python3
"""Async orchestrator for the mosqctl broker manager.

Architecture:
    main() -> BrokerManager -> TaskGroup
        ├── status-writer (status_writer)
        ├── log-maintenance (log_maintenance, when broker logging is on)
        ├── sys-stats (SysStatsMonitor, optional)
        └── ProcessSupervisor timers (status / health checks)

The manager owns the single ``ManagerConfig`` instance and hands it to every
component; configuration changes go through :meth:`BrokerManager.update_config`
so the merged result is validated before any component sees it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, NoReturn

import msgspec
import tenacity
import uvloop

from . import __version__
from .broker.installer import BinaryInstaller, Installer
from .broker.process import BrokerHandle, MosquittoProcess
from .broker.sysstats import SysStatsMonitor
from .compiler import ArtifactWriter
from .config.const import (
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
    SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    SUPERVISOR_MIN_RESTART_WINDOW,
)
from .config.logging import configure_logging
from .config.model import DataLayout, ManagerConfig
from .config.settings import config_source, config_to_dict, load_manager_config, merge_config
from .errors import ManagerError, ValidationError
from .security.certificates import CertificateIssuer
from .state.maintenance import log_maintenance
from .state.status import cleanup_status_file, status_writer
from .store.bridges import BridgeRegistry
from .store.credentials import CredentialStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger("mosqctl")

# Fields that only take effect after the manager is restarted.
_IMMUTABLE_FIELDS = frozenset({"data_dir", "config_version"})


class SupervisedTaskSpec(msgspec.Struct):
    """Specification for a supervised async task."""

    name: str
    factory: Callable[[], Awaitable[None]]
    fatal_exceptions: tuple[type[BaseException], ...] = ()
    max_restarts: int | None = None
    restart_interval: float = SUPERVISOR_DEFAULT_RESTART_INTERVAL
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF


class TaskHealth(msgspec.Struct):
    restarts: int = 0
    last_failure: str | None = None
    last_failure_unix: float | None = None
    backoff: float = 0.0
    fatal: bool = False

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class BrokerManager:
    """Wires the stores, compiler, certificate issuer and supervisor together.

    Attributes:
        config: The owned manager configuration.
        layout: Paths of every managed file under ``data_dir``.
        credentials: User / ACL store.
        bridges: Bridge registry.
        supervisor: Broker lifecycle state machine.
    """

    def __init__(
        self,
        config: ManagerConfig,
        *,
        broker: BrokerHandle | None = None,
        installer: Installer | None = None,
        config_source: str = "defaults",
    ) -> None:
        self.config = config
        self.config_source = config_source
        self.layout = DataLayout.from_config(config)
        self.writer = ArtifactWriter(self.layout)
        self.credentials = CredentialStore(config, self.layout, self.writer)
        self.bridges = BridgeRegistry(config, self.layout, self.writer)
        self.certificates = CertificateIssuer(config, self.layout)
        self.stats = SysStatsMonitor(config)
        self.broker: BrokerHandle = broker or MosquittoProcess(config, self.layout, self.stats)
        self.installer: Installer = installer or BinaryInstaller(config)
        self.supervisor = ProcessSupervisor(self.broker, config)
        self.task_health: dict[str, TaskHealth] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Prepare the data directory and compile every artifact."""
        await asyncio.to_thread(self.layout.root.mkdir, parents=True, exist_ok=True)
        if self.config.tls_enabled and self.config.auto_generate_certificates:
            await self.certificates.ensure_certificates()
        await self.credentials.open()
        await self.bridges.open()
        logger.info("Manager ready (data_dir=%s)", self.layout.root)

    async def start(self) -> None:
        if not await self.installer.is_installed():
            await self.installer.install()
        await self.supervisor.start(launch=self.config.auto_start)

    async def stop(self) -> None:
        await self.supervisor.stop()
        await self.broker.stop()

    async def apply_changes(self) -> bool:
        """Recompile ``mosquitto.conf`` and restart a supervised broker."""
        await self.bridges.compile()
        if self.supervisor.fsm_state == ProcessSupervisor.STATE_STOPPED:
            return False
        return await self.supervisor.force_restart()

    async def generate_certificates(self) -> bool:
        generated = await self.certificates.ensure_certificates()
        await self.bridges.compile()
        return generated

    async def update_config(self, changes: dict[str, Any]) -> ManagerConfig:
        """Validate *changes* against the current configuration and apply them."""
        frozen = _IMMUTABLE_FIELDS.intersection(changes)
        if frozen:
            raise ValidationError([f"{name} cannot be changed at runtime" for name in sorted(frozen)])

        updated = merge_config(msgspec.to_builtins(self.config), changes)
        for field in msgspec.structs.fields(ManagerConfig):
            setattr(self.config, field.name, getattr(updated, field.name))

        await self.supervisor.update_configuration(
            status_interval=self.config.status_check_interval,
            health_interval=self.config.health_check_interval,
            max_restart_attempts=self.config.max_restart_attempts,
        )
        if self.config.tls_enabled and self.config.auto_generate_certificates:
            await self.certificates.ensure_certificates()
        await self.apply_changes()
        logger.info("Configuration updated: %s", ", ".join(sorted(changes)))
        return self.config

    async def get_status(self) -> dict[str, Any]:
        try:
            broker = (await self.broker.get_status()).as_dict()
        except (ManagerError, OSError) as exc:
            broker = {"running": False, "error": str(exc)}

        bridges = self.bridges.list_bridges()
        status: dict[str, Any] = {
            "version": __version__,
            "config_source": self.config_source,
            "config": self.describe_config(),
            "broker": broker,
            "supervisor": self.supervisor.snapshot(),
            "users": len(self.credentials.list_users()),
            "acl_rules": len(self.credentials.list_rules()),
            "bridges": len(bridges),
            "active_bridges": sum(1 for bridge in bridges if bridge.enabled),
            "sys_stats_connected": self.stats.connected,
            "tasks": {name: health.as_dict() for name, health in self.task_health.items()},
        }
        if self.config.tls_enabled:
            status["tls"] = await asyncio.to_thread(self.certificates.describe_certificates)
        return status

    def describe_config(self) -> dict[str, Any]:
        return config_to_dict(self.config)

    # ------------------------------------------------------------------
    # Background task supervision
    # ------------------------------------------------------------------

    def record_task_failure(self, name: str, *, backoff: float, exc: BaseException, fatal: bool) -> None:
        health = self.task_health.setdefault(name, TaskHealth())
        health.restarts += 1
        health.last_failure = f"{type(exc).__name__}: {exc}"
        health.last_failure_unix = time.time()
        health.backoff = backoff
        health.fatal = fatal

    def mark_task_healthy(self, name: str) -> None:
        health = self.task_health.setdefault(name, TaskHealth())
        health.backoff = 0.0
        health.fatal = False

    async def _run_status_writer(self) -> None:
        await status_writer(self, self.config.status_interval)

    async def _run_log_maintenance(self) -> None:
        await log_maintenance(self, self.config.maintenance_interval)

    def _setup_supervision(self) -> list[SupervisedTaskSpec]:
        specs: list[SupervisedTaskSpec] = [
            SupervisedTaskSpec(
                name="status-writer",
                factory=self._run_status_writer,
                max_restarts=5,
            ),
        ]
        if self.config.enable_logging:
            specs.append(
                SupervisedTaskSpec(
                    name="log-maintenance",
                    factory=self._run_log_maintenance,
                    max_restarts=5,
                ),
            )
        if self.config.sys_stats_enabled:
            specs.append(
                SupervisedTaskSpec(
                    name="sys-stats",
                    factory=self.stats.run,
                ),
            )
        return specs

    async def _supervise_task(self, spec: SupervisedTaskSpec) -> None:
        """Run ``spec.factory`` restarting it on failures using tenacity."""
        log = logging.getLogger("mosqctl.tasks")
        callbacks = self._SupervisorCallbacks(spec.name, log, self)

        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=spec.min_backoff, max=spec.max_backoff),
            retry=tenacity.retry_if_not_exception_type(
                (asyncio.CancelledError, SystemExit, KeyboardInterrupt, GeneratorExit) + spec.fatal_exceptions
            ),
            stop=(
                tenacity.stop_after_attempt(spec.max_restarts + 1)
                if spec.max_restarts is not None
                else tenacity.stop_never
            ),
            before_sleep=callbacks.before_sleep,
            after=callbacks.after_retry,
            reraise=True,
        )

        last_start_time = 0.0

        try:
            while True:
                try:
                    async for attempt in retryer:
                        with attempt:
                            last_start_time = time.monotonic()
                            await spec.factory()

                            log.warning("%s task exited cleanly; supervisor exiting", spec.name)
                            self.mark_task_healthy(spec.name)
                            return
                except spec.fatal_exceptions as exc:
                    log.critical("%s failed with fatal exception: %s", spec.name, exc)
                    self.record_task_failure(spec.name, backoff=0.0, exc=exc, fatal=True)
                    raise
                except Exception:
                    window = max(SUPERVISOR_MIN_RESTART_WINDOW, spec.restart_interval)
                    if last_start_time > 0 and (time.monotonic() - last_start_time) > window:
                        log.info("%s was healthy long enough; resetting backoff", spec.name)
                        self.mark_task_healthy(spec.name)
                        continue
                    log.error("%s exceeded max restarts (%s); giving up", spec.name, spec.max_restarts)
                    raise
        except asyncio.CancelledError:
            log.debug("%s supervisor cancelled", spec.name)
            raise

    class _SupervisorCallbacks:
        """Tenacity hooks recording task failures on the manager."""

        __slots__ = ("name", "log", "manager")

        def __init__(self, name: str, log: logging.Logger, manager: BrokerManager):
            self.name = name
            self.log = log
            self.manager = manager

        def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            self.log.error("%s failed (%s); restarting in %.1fs", self.name, exc, delay)

        def after_retry(self, retry_state: tenacity.RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if exc:
                is_last = retry_state.next_action is None
                delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
                self.manager.record_task_failure(self.name, backoff=delay, exc=exc, fatal=is_last)

    async def run(self) -> None:
        """Main async entry point."""
        await self.open()
        await self.start()
        supervised_tasks = self._setup_supervision()

        try:
            async with asyncio.TaskGroup() as task_group:
                for spec in supervised_tasks:
                    task_group.create_task(self._supervise_task(spec), name=spec.name)
        except* asyncio.CancelledError:
            logger.info("Main task cancelled; shutting down.")
        except* Exception as exc_group:
            for group_exc in exc_group.exceptions:
                logger.critical(
                    "Unhandled exception in main task group: %s",
                    group_exc,
                    exc_info=group_exc,
                )
            raise
        finally:
            await self.stop()
            cleanup_status_file(self.layout.status_file)
            logger.info("mosqctl manager stopped.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mosqctl", description="Manage a local Mosquitto broker.")
    parser.add_argument("-c", "--config", help="path to the JSON configuration file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Sequence[str] | None = None) -> NoReturn:  # pragma: no cover (Entry point wrapper)
    args = build_parser().parse_args(argv)
    try:
        config = load_manager_config(args.config)
    except ManagerError as exc:
        print(f"mosqctl: {exc}", file=sys.stderr)
        sys.exit(1)
    configure_logging(config)

    logger.info(
        "Starting mosqctl %s. Broker: %s:%d data_dir=%s",
        __version__,
        config.broker_host,
        config.broker_port,
        config.data_dir,
    )
    if config.allow_anonymous:
        logger.warning("Broker allows anonymous clients; disable allow_anonymous for production.")

    try:
        manager = BrokerManager(config, config_source=config_source(args.config))
        asyncio.run(manager.run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Manager interrupted by user.")
        sys.exit(0)
    except ManagerError as exc:
        logger.critical("Startup aborted: %s", exc)
        sys.exit(1)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during manager execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
