"""Locate or install the broker binary."""

from __future__ import annotations

import asyncio
import logging
import shutil
from typing import Protocol

from ..config.model import ManagerConfig
from ..errors import ExternalProcessError

logger = logging.getLogger("mosqctl.installer")


class Installer(Protocol):
    async def is_installed(self) -> bool: ...

    async def install(self) -> None: ...


class BinaryInstaller:
    """Finds the broker on ``PATH`` and runs an operator-supplied install command.

    Package-manager detection is left to the operator: ``install_command`` in
    the configuration is executed verbatim (no shell).
    """

    def __init__(self, config: ManagerConfig) -> None:
        self.config = config

    def binary_path(self) -> str | None:
        return shutil.which(self.config.broker_binary)

    async def is_installed(self) -> bool:
        path = await asyncio.to_thread(self.binary_path)
        if path is None:
            logger.info("Broker binary '%s' not found on PATH", self.config.broker_binary)
            return False
        logger.debug("Broker binary found at %s", path)
        return True

    async def install(self) -> None:
        command = self.config.install_command
        if not command:
            raise ExternalProcessError(
                f"'{self.config.broker_binary}' is not installed and no install_command is configured"
            )

        logger.info("Installing broker: %s", " ".join(command))
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ExternalProcessError("Failed to launch install command", original=exc) from exc

        output, _ = await proc.communicate()
        if proc.returncode != 0:
            tail = output.decode("utf-8", errors="replace").strip().splitlines()[-5:]
            raise ExternalProcessError(f"Install command exited with {proc.returncode}: {' | '.join(tail)}")

        if not await self.is_installed():
            raise ExternalProcessError(f"Install command succeeded but '{self.config.broker_binary}' is still missing")
        logger.info("Broker installed successfully.")


__all__ = ["BinaryInstaller", "Installer"]
