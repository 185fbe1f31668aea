"""Bridge registry: CRUD over bridge definitions plus a live probe.

Each mutation persists ``bridges.json`` and regenerates ``mosquitto.conf``
so the broker picks the change up on its next launch.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
import uuid
from typing import Any

import aiomqtt
import msgspec

from ..compiler import ArtifactWriter
from ..config.model import BridgeDefinition, DataLayout, ImportResult, ManagerConfig
from ..errors import ConflictError, NotFoundError, ValidationError
from ..util.mqtt_helper import configure_tls_context
from ..validation import ensure_valid, validate_bridge
from .datastore import RecordFile

logger = logging.getLogger("mosqctl.bridges")


def _copy(bridge: BridgeDefinition, **changes: Any) -> BridgeDefinition:
    # Deep enough for topics, which are the only mutable members.
    clone = msgspec.convert(msgspec.to_builtins(bridge), BridgeDefinition)
    return msgspec.structs.replace(clone, **changes) if changes else clone


class BridgeRegistry:
    """Owns the bridge definitions compiled into the broker configuration."""

    def __init__(self, config: ManagerConfig, layout: DataLayout, writer: ArtifactWriter) -> None:
        self.config = config
        self.layout = layout
        self.writer = writer
        self._file: RecordFile[BridgeDefinition] = RecordFile(layout.bridges_file, BridgeDefinition)
        self._bridges: list[BridgeDefinition] = []
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        async with self._lock:
            self._bridges = await self._file.load()
            await self.compile()
        logger.info("Bridge registry loaded: %d bridges", len(self._bridges))

    async def compile(self, bridges: list[BridgeDefinition] | None = None) -> None:
        """Regenerate ``mosquitto.conf`` from the current configuration."""
        await self.writer.write_broker_config(self.config, self._bridges if bridges is None else bridges)

    def _index(self, bridge_id: str) -> int:
        for index, bridge in enumerate(self._bridges):
            if bridge.id == bridge_id:
                return index
        raise NotFoundError(f"Bridge with ID '{bridge_id}' not found")

    def _exists(self, bridge_id: str) -> bool:
        return any(bridge.id == bridge_id for bridge in self._bridges)

    def list_bridges(self) -> list[BridgeDefinition]:
        return [_copy(bridge) for bridge in self._bridges]

    def get_bridge(self, bridge_id: str) -> BridgeDefinition:
        return _copy(self._bridges[self._index(bridge_id)])

    async def add_bridge(self, bridge: BridgeDefinition) -> BridgeDefinition:
        ensure_valid(validate_bridge(bridge), subject="Bridge")
        async with self._lock:
            if self._exists(bridge.id):
                raise ConflictError(f"Bridge with ID '{bridge.id}' already exists")
            stored = _copy(bridge)
            await self._commit([*self._bridges, stored])
        logger.info("Bridge '%s' added", bridge.name)
        return _copy(stored)

    async def update_bridge(self, bridge_id: str, bridge: BridgeDefinition) -> BridgeDefinition:
        # The id is immutable here; rename_bridge is the only way to change it.
        updated = _copy(bridge, id=bridge_id)
        ensure_valid(validate_bridge(updated), subject="Bridge")
        async with self._lock:
            bridges = list(self._bridges)
            bridges[self._index(bridge_id)] = updated
            await self._commit(bridges)
        logger.info("Bridge '%s' updated", updated.name)
        return _copy(updated)

    async def rename_bridge(self, bridge_id: str, new_id: str) -> BridgeDefinition:
        async with self._lock:
            index = self._index(bridge_id)
            renamed = _copy(self._bridges[index], id=new_id)
            ensure_valid(validate_bridge(renamed), subject="Bridge")
            if new_id != bridge_id and self._exists(new_id):
                raise ConflictError(f"Bridge with ID '{new_id}' already exists")
            bridges = list(self._bridges)
            bridges[index] = renamed
            await self._commit(bridges)
        logger.info("Bridge '%s' renamed to '%s'", bridge_id, new_id)
        return _copy(renamed)

    async def remove_bridge(self, bridge_id: str) -> None:
        async with self._lock:
            bridges = list(self._bridges)
            removed = bridges.pop(self._index(bridge_id))
            await self._commit(bridges)
        logger.info("Bridge '%s' removed", removed.name)

    async def _set_enabled(self, bridge_id: str, enabled: bool) -> BridgeDefinition:
        async with self._lock:
            index = self._index(bridge_id)
            bridge = _copy(self._bridges[index], enabled=enabled)
            bridges = list(self._bridges)
            bridges[index] = bridge
            await self._commit(bridges)
        logger.info("Bridge '%s' %s", bridge.name, "enabled" if enabled else "disabled")
        return _copy(bridge)

    async def enable_bridge(self, bridge_id: str) -> BridgeDefinition:
        return await self._set_enabled(bridge_id, True)

    async def disable_bridge(self, bridge_id: str) -> BridgeDefinition:
        return await self._set_enabled(bridge_id, False)

    async def duplicate_bridge(self, bridge_id: str, new_id: str | None = None) -> BridgeDefinition:
        """Copy a bridge under a new id; the copy starts disabled."""
        source = self.get_bridge(bridge_id)
        duplicate = _copy(
            source,
            id=new_id or uuid.uuid4().hex,
            name=f"{source.name} (Copy)",
            enabled=False,
        )
        created = await self.add_bridge(duplicate)
        logger.info("Bridge '%s' duplicated as '%s'", source.name, created.name)
        return created

    def export_config(self, bridge_id: str | None = None) -> str:
        """JSON export of one bridge (as an object) or all bridges (as an array)."""
        payload: Any = self.get_bridge(bridge_id) if bridge_id else self._bridges
        return msgspec.json.format(msgspec.json.encode(payload), indent=2).decode("utf-8")

    async def import_config(
        self,
        payload: str | bytes | dict[str, Any] | list[Any],
        *,
        overwrite: bool = False,
    ) -> ImportResult:
        decoded: Any = payload
        if isinstance(payload, (str, bytes)):
            try:
                decoded = msgspec.json.decode(payload)
            except msgspec.DecodeError as exc:
                raise ValidationError(["Invalid JSON format"], subject="Bridge import") from exc
        entries = decoded if isinstance(decoded, list) else [decoded]

        result = ImportResult()
        async with self._lock:
            bridges = list(self._bridges)
            for entry in entries:
                bridge = self._decode_bridge(entry)
                if bridge is None:
                    result.skipped_bridges += 1
                    continue
                existing = next((i for i, item in enumerate(bridges) if item.id == bridge.id), None)
                if existing is None:
                    bridges.append(bridge)
                    result.bridges += 1
                elif overwrite:
                    bridges[existing] = bridge
                    result.bridges += 1
                else:
                    logger.info("Skipping existing bridge '%s' (ID: %s)", bridge.name, bridge.id)
                    result.skipped_bridges += 1

            if result.bridges:
                await self._commit(bridges)

        logger.info("Imported %d bridge(s), skipped %d", result.bridges, result.skipped_bridges)
        return result

    @staticmethod
    def _decode_bridge(entry: Any) -> BridgeDefinition | None:
        try:
            bridge = msgspec.convert(entry, BridgeDefinition)
        except msgspec.ValidationError as exc:
            logger.info("Skipping malformed bridge entry: %s", exc)
            return None
        errors = validate_bridge(bridge)
        if errors:
            logger.info("Skipping invalid bridge '%s': %s", bridge.name, ", ".join(errors))
            return None
        return bridge

    async def test_connection(self, bridge: BridgeDefinition) -> bool:
        """Try a real MQTT connect to the bridge's remote broker."""
        try:
            tls_context = configure_tls_context(bridge)
        except RuntimeError as exc:
            logger.warning("Bridge test connection to %s failed: %s", bridge.remote_host, exc)
            return False

        try:
            async with asyncio.timeout(self.config.bridge_connect_timeout):
                async with aiomqtt.Client(
                    hostname=bridge.remote_host,
                    port=bridge.remote_port,
                    username=bridge.remote_username or None,
                    password=bridge.remote_password or None,
                    identifier=f"mosqctl-probe-{uuid.uuid4().hex[:8]}",
                    keepalive=bridge.keepalive,
                    clean_session=bridge.clean_session,
                    tls_context=tls_context,
                    timeout=self.config.bridge_connect_timeout,
                    logger=logging.getLogger("mosqctl.bridges.probe"),
                ):
                    logger.info("Bridge test connection to %s:%d succeeded", bridge.remote_host, bridge.remote_port)
                    return True
        except TimeoutError:
            logger.warning(
                "Bridge test connection to %s:%d timed out after %.0fs",
                bridge.remote_host,
                bridge.remote_port,
                self.config.bridge_connect_timeout,
            )
        except (aiomqtt.MqttError, OSError) as exc:
            logger.warning("Bridge test connection to %s:%d failed: %s", bridge.remote_host, bridge.remote_port, exc)
        return False

    async def get_bridge_status(self, bridge_id: str) -> dict[str, Any]:
        bridge = self.get_bridge(bridge_id)
        if not bridge.enabled:
            return {"id": bridge.id, "connected": False, "error": "Bridge is disabled"}
        connected = await self.test_connection(bridge)
        status: dict[str, Any] = {"id": bridge.id, "connected": connected}
        if connected:
            status["last_seen"] = time.time()
        else:
            status["error"] = "Connection failed"
        return status

    async def get_bridge_logs(self, bridge_id: str, lines: int = 100) -> list[str]:
        """Lines mentioning *bridge_id* among the last *lines* of the broker log."""
        self._index(bridge_id)
        log_file = self.layout.log_file

        def _tail() -> list[str]:
            try:
                with log_file.open("r", encoding="utf-8", errors="replace") as handle:
                    tail = collections.deque(handle, maxlen=max(lines, 1))
            except FileNotFoundError:
                return []
            return [line.rstrip("\n") for line in tail if bridge_id in line]

        return await asyncio.to_thread(_tail)

    async def _commit(self, bridges: list[BridgeDefinition]) -> None:
        await self._file.save(bridges)
        await self.compile(bridges)
        self._bridges = bridges


__all__ = ["BridgeRegistry"]
