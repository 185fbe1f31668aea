"""JSON record files backing the credential and bridge stores."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Generic, TypeVar

import msgspec

from ..config.const import PRIVATE_FILE_MODE
from ..errors import ArtifactIOError
from ..util import write_file_atomic

logger = logging.getLogger("mosqctl.store")

T = TypeVar("T", bound=msgspec.Struct)


class RecordFile(Generic[T]):
    """A list of ``msgspec.Struct`` records persisted as one JSON array.

    Records are loaded once when the owning store opens and the whole file
    is rewritten after each mutation.
    """

    def __init__(self, path: Path, record_type: type[T]) -> None:
        self.path = path
        self.record_type = record_type
        self._decoder = msgspec.json.Decoder(list[record_type])  # type: ignore[valid-type]

    def _read(self) -> list[T]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise ArtifactIOError(str(self.path), original=exc) from exc
        if not raw.strip():
            return []
        try:
            return self._decoder.decode(raw)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            logger.error("Corrupt record file %s: %s", self.path, exc)
            raise ArtifactIOError(str(self.path), original=exc) from exc

    async def load(self) -> list[T]:
        records = await asyncio.to_thread(self._read)
        logger.debug("Loaded %d records from %s", len(records), self.path)
        return records

    async def save(self, records: list[T]) -> None:
        payload = msgspec.json.format(msgspec.json.encode(records), indent=2)
        await write_file_atomic(self.path, payload + b"\n", mode=PRIVATE_FILE_MODE)


__all__ = ["RecordFile"]
