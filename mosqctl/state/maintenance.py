"""Broker log rotation for the mosqctl manager."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import ArtifactIOError

if TYPE_CHECKING:
    from ..daemon import BrokerManager

logger = logging.getLogger("mosqctl.maintenance")


def _backup_pattern(log_file: Path) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(log_file.name)}\.(\d+)\.bak$")


def list_log_backups(log_file: Path) -> list[Path]:
    """Rotated copies of *log_file*, newest first."""
    pattern = _backup_pattern(log_file)
    found: list[tuple[int, Path]] = []
    try:
        entries = list(log_file.parent.iterdir())
    except FileNotFoundError:
        return []
    for entry in entries:
        match = pattern.match(entry.name)
        if match:
            found.append((int(match.group(1)), entry))
    return [path for _, path in sorted(found, reverse=True)]


def rotate_log(log_file: Path, max_bytes: int) -> Path | None:
    """Copy *log_file* aside and truncate it once it exceeds *max_bytes*.

    The broker keeps its log open, so the file is truncated in place rather
    than renamed. Returns the backup path when a rotation happened.
    """
    try:
        size = log_file.stat().st_size
    except FileNotFoundError:
        return None
    if size <= max_bytes:
        return None

    stamp = int(time.time() * 1000)
    backup = log_file.with_name(f"{log_file.name}.{stamp}.bak")
    while backup.exists():
        stamp += 1
        backup = log_file.with_name(f"{log_file.name}.{stamp}.bak")
    try:
        shutil.copyfile(log_file, backup)
        os.truncate(log_file, 0)
    except OSError as exc:
        raise ArtifactIOError(str(log_file), original=exc) from exc
    logger.info("Broker log rotated to %s (%d bytes)", backup.name, size)
    return backup


def prune_log_backups(log_file: Path, keep: int) -> list[Path]:
    """Delete all but the newest *keep* backups; returns the removed paths."""
    removed = list_log_backups(log_file)[keep:]
    for path in removed:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise ArtifactIOError(str(path), original=exc) from exc
        logger.info("Deleted old log backup %s", path.name)
    return removed


def run_log_maintenance(log_file: Path, *, max_bytes: int, keep: int) -> Path | None:
    backup = rotate_log(log_file, max_bytes)
    prune_log_backups(log_file, keep)
    return backup


async def log_maintenance(manager: BrokerManager, interval: float) -> None:
    """Rotate and prune the broker log every *interval* seconds."""

    log_file = manager.layout.log_file
    while True:
        try:
            await asyncio.to_thread(
                run_log_maintenance,
                log_file,
                max_bytes=manager.config.log_max_bytes,
                keep=manager.config.log_backup_count,
            )
        except asyncio.CancelledError:
            logger.info("Log maintenance task cancelled.")
            raise
        await asyncio.sleep(interval)


__all__ = [
    "list_log_backups",
    "log_maintenance",
    "prune_log_backups",
    "rotate_log",
    "run_log_maintenance",
]
