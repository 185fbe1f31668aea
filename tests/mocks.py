"""Shared fakes for mosqctl tests."""

from __future__ import annotations

from dataclasses import dataclass, field

from mosqctl.config.model import BrokerStatus
from mosqctl.errors import ExternalProcessError


@dataclass
class FakeBroker:
    """In-memory broker handle; ``restart`` brings it up unless told otherwise."""

    running: bool = False
    pid: int | None = None
    recover_on_restart: bool = True
    fail_start: bool = False
    status_error: Exception | None = None
    start_calls: int = 0
    stop_calls: int = 0
    restart_calls: int = 0
    events: list[str] = field(default_factory=list)

    async def start(self) -> None:
        self.start_calls += 1
        self.events.append("start")
        if self.fail_start:
            raise ExternalProcessError("broker refused to start")
        self.running = True

    async def stop(self) -> None:
        self.stop_calls += 1
        self.events.append("stop")
        self.running = False

    async def restart(self) -> None:
        self.restart_calls += 1
        self.events.append("restart")
        self.running = self.recover_on_restart

    async def get_status(self) -> BrokerStatus:
        if self.status_error is not None:
            raise self.status_error
        return BrokerStatus(running=self.running, pid=self.pid if self.running else None)


@dataclass
class FakeInstaller:
    installed: bool = True
    install_calls: int = 0

    async def is_installed(self) -> bool:
        return self.installed

    async def install(self) -> None:
        self.install_calls += 1
        self.installed = True
