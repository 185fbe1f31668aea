"""Default broker process handle launching the ``mosquitto`` binary."""

from __future__ import annotations

import asyncio
import logging
import time
from asyncio.subprocess import Process
from typing import Protocol

import psutil
import tenacity

from ..config.const import DEFAULT_BROKER_STOP_TIMEOUT
from ..config.model import BrokerStatus, DataLayout, ManagerConfig
from ..errors import ExternalProcessError
from .sysstats import SysStatsMonitor, parse_version

logger = logging.getLogger("mosqctl.broker")

_READINESS_POLL_INTERVAL = 0.2


class BrokerHandle(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def restart(self) -> None: ...

    async def get_status(self) -> BrokerStatus: ...


def _kill_process_tree_sync(pid: int, timeout: float) -> None:
    try:
        process = psutil.Process(pid)
    except psutil.Error:
        return
    try:
        children = process.children(recursive=True)
    except psutil.Error:
        children = []
    targets = children + [process]

    for proc in targets:
        try:
            proc.terminate()
        except psutil.Error:
            continue

    _, alive = psutil.wait_procs(targets, timeout=max(0.1, timeout))
    for proc in alive:
        try:
            proc.kill()
        except psutil.Error:
            continue
    if alive:
        psutil.wait_procs(alive, timeout=max(0.1, timeout))


class MosquittoProcess:
    """Runs ``mosquitto -c <data_dir>/mosquitto.conf`` as a child process."""

    def __init__(
        self,
        config: ManagerConfig,
        layout: DataLayout,
        stats: SysStatsMonitor | None = None,
    ) -> None:
        self.config = config
        self.layout = layout
        self.stats = stats
        self._proc: Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._version: str | None = None
        self._version_checked = False
        self._lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        if self._proc is None or self._proc.returncode is not None:
            return None
        return self._proc.pid

    @property
    def probe_host(self) -> str:
        host = self.config.broker_host
        return "127.0.0.1" if host in ("", "0.0.0.0", "::") else host

    async def start(self) -> None:
        async with self._lock:
            if self.pid is not None:
                logger.debug("Broker already running (pid %d)", self.pid)
                return
            await self._spawn()

    async def stop(self) -> None:
        async with self._lock:
            await self._terminate()

    async def restart(self) -> None:
        async with self._lock:
            await self._terminate()
            await self._spawn()

    async def _spawn(self) -> None:
        conf = self.layout.broker_config_file
        if not conf.exists():
            raise ExternalProcessError(f"Broker configuration {conf} missing")

        argv = [self.config.broker_binary, "-c", str(conf)]
        logger.info("Starting broker: %s", " ".join(argv))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExternalProcessError("Failed to launch broker", original=exc) from exc

        if self._proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(self._proc.stderr))

        try:
            await self._wait_until_ready()
        except ExternalProcessError:
            await self._terminate()
            raise
        logger.info("Broker started (pid %d)", self._proc.pid)

    async def _wait_until_ready(self) -> None:
        proc = self._proc
        assert proc is not None

        retryer = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_delay(self.config.broker_start_timeout),
            wait=tenacity.wait_fixed(_READINESS_POLL_INTERVAL),
            retry=tenacity.retry_if_exception_type(OSError),
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    if proc.returncode is not None:
                        raise ExternalProcessError(f"Broker exited during startup with code {proc.returncode}")
                    _, writer = await asyncio.open_connection(self.probe_host, self.config.broker_port)
                    writer.close()
                    await writer.wait_closed()
        except OSError as exc:
            raise ExternalProcessError(
                f"Broker not accepting connections after {self.config.broker_start_timeout:.0f}s",
                original=exc,
            ) from exc

    async def _terminate(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is not None and proc.returncode is None:
            logger.info("Stopping broker (pid %d)", proc.pid)
            await asyncio.to_thread(_kill_process_tree_sync, proc.pid, DEFAULT_BROKER_STOP_TIMEOUT)
            try:
                async with asyncio.timeout(DEFAULT_BROKER_STOP_TIMEOUT):
                    await proc.wait()
            except TimeoutError:
                logger.warning("Broker pid %d did not exit after termination", proc.pid)

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None

        if self.stats is not None:
            self.stats.reset()

    async def _drain_stderr(self, reader: asyncio.StreamReader) -> None:
        while True:
            line = await reader.readline()
            if not line:
                return
            logger.warning("broker: %s", line.decode("utf-8", errors="replace").rstrip())

    async def detect_version(self) -> str | None:
        """Version string from the first line of ``mosquitto -h``; cached."""
        if self._version_checked:
            return self._version
        self._version_checked = True
        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.broker_binary,
                "-h",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await proc.communicate()
        except OSError as exc:
            logger.debug("Unable to query broker version: %s", exc)
            return None
        first_line = output.decode("utf-8", errors="replace").strip().splitlines()[:1]
        if first_line:
            self._version = parse_version(first_line[0])
        return self._version

    async def get_status(self) -> BrokerStatus:
        pid = self.pid
        running = pid is not None and await asyncio.to_thread(psutil.pid_exists, pid)
        status = BrokerStatus(running=running, pid=pid if running else None)
        if not running:
            return status

        try:
            created = await asyncio.to_thread(lambda: psutil.Process(pid).create_time())
            status.uptime = max(0.0, time.time() - created)
        except psutil.Error:
            status.uptime = None

        status.version = (self.stats.version if self.stats else None) or await self.detect_version()
        if self.stats is not None:
            for name, value in self.stats.snapshot().items():
                setattr(status, name, value)
        return status


__all__ = ["BrokerHandle", "MosquittoProcess"]
