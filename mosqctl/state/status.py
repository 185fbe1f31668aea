"""Periodic status writer for the mosqctl manager."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import msgspec

from ..config.const import PUBLIC_FILE_MODE
from ..util import write_file_atomic

if TYPE_CHECKING:
    from ..daemon import BrokerManager

logger = logging.getLogger("mosqctl.status")


async def status_writer(manager: BrokerManager, interval: int) -> None:
    """Persist the manager status snapshot periodically."""

    path = manager.layout.status_file
    while True:
        try:
            payload: dict[str, Any] = await manager.get_status()
            payload["heartbeat_unix"] = time.time()
            await write_status_file(path, payload)
        except asyncio.CancelledError:
            logger.info("Status writer task cancelled.")
            raise
        await asyncio.sleep(interval)


async def write_status_file(path: Path, payload: dict[str, Any]) -> None:
    await write_file_atomic(path, msgspec.json.encode(payload), mode=PUBLIC_FILE_MODE)


def cleanup_status_file(path: Path) -> None:
    """Remove the status file if it exists."""

    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.debug("Ignoring error while removing status file %s.", path)
