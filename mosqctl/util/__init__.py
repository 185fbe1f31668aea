"""General-purpose utilities for mosqctl."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from tempfile import NamedTemporaryFile

from ..errors import ArtifactIOError

__all__ = [
    "safe_int",
    "write_file_atomic",
    "write_file_atomic_sync",
]

logger = logging.getLogger("mosqctl.util")


def safe_int(value: object, default: int) -> int:
    try:
        return int(float(value))  # type: ignore
    except (ValueError, TypeError, OverflowError):
        return default


def write_file_atomic_sync(path: Path, data: bytes, *, mode: int) -> None:
    """Replace *path* with *data* so readers never observe a partial file.

    The content lands in a sibling temporary file first and is renamed over
    the target once flushed; *mode* is applied before the rename.
    """
    temp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with NamedTemporaryFile("wb", dir=path.parent, prefix=f".{path.name}.", delete=False) as handle:
            temp_name = handle.name
            handle.write(data)
            handle.flush()
            os.fchmod(handle.fileno(), mode)
            os.fsync(handle.fileno())
        Path(temp_name).replace(path)
    except OSError as exc:
        if temp_name is not None:
            Path(temp_name).unlink(missing_ok=True)
        raise ArtifactIOError(str(path), original=exc) from exc


async def write_file_atomic(path: Path, data: bytes, *, mode: int) -> None:
    """Async wrapper around :func:`write_file_atomic_sync`.

    A cancelled caller still waits for the write to finish so the target is
    never left half-replaced.
    """
    write_task = asyncio.create_task(asyncio.to_thread(write_file_atomic_sync, path, data, mode=mode))
    try:
        await asyncio.shield(write_task)
    except asyncio.CancelledError:
        await write_task
        raise
