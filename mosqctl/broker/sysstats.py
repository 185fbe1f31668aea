"""Sample the broker's ``$SYS/broker/#`` counters over MQTT."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Final

import aiomqtt
import tenacity
from transitions import Machine

from ..config.model import ManagerConfig
from ..util import safe_int

logger = logging.getLogger("mosqctl.sysstats")

SYS_TOPIC_FILTER: Final[str] = "$SYS/broker/#"

COUNTER_TOPICS: Final[dict[str, str]] = {
    "$SYS/broker/clients/connected": "connected_clients",
    "$SYS/broker/clients/total": "total_connections",
    "$SYS/broker/messages/received": "messages_received",
    "$SYS/broker/messages/sent": "messages_published",
    "$SYS/broker/bytes/received": "bytes_received",
    "$SYS/broker/bytes/sent": "bytes_published",
}
VERSION_TOPIC: Final[str] = "$SYS/broker/version"

_LOOPBACK_HOSTS = frozenset({"", "0.0.0.0", "::"})
_VERSION_RE = re.compile(r"version\s+(\S+)", re.IGNORECASE)


def parse_version(text: str) -> str | None:
    """Extract the bare version from e.g. ``mosquitto version 2.0.18``."""
    text = text.strip()
    if not text:
        return None
    match = _VERSION_RE.search(text)
    return match.group(1) if match else text


def _log_retry_attempt(retry_state: tenacity.RetryCallState) -> None:
    if retry_state.attempt_number > 1:
        logger.debug(
            "Reconnecting $SYS sampler (attempt %d, next wait %.2fs)...",
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )


class SysStatsMonitor:
    """Keeps the latest broker counters published under ``$SYS``."""

    STATE_DISCONNECTED = "disconnected"
    STATE_CONNECTING = "connecting"
    STATE_READY = "ready"

    def __init__(self, config: ManagerConfig) -> None:
        self.config = config
        self.counters: dict[str, int] = {name: 0 for name in COUNTER_TOPICS.values()}
        self.version: str | None = None
        self.fsm_state = self.STATE_DISCONNECTED

        self.machine = Machine(
            model=self,
            states=[self.STATE_DISCONNECTED, self.STATE_CONNECTING, self.STATE_READY],
            initial=self.STATE_DISCONNECTED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
        )
        self.machine.add_transition("connect", "*", self.STATE_CONNECTING)
        self.machine.add_transition("subscribed", self.STATE_CONNECTING, self.STATE_READY)
        self.machine.add_transition("disconnect", "*", self.STATE_DISCONNECTED)

    @property
    def connected(self) -> bool:
        return self.fsm_state == self.STATE_READY

    @property
    def hostname(self) -> str:
        host = self.config.broker_host
        return "127.0.0.1" if host in _LOOPBACK_HOSTS else host

    def reset(self) -> None:
        for name in self.counters:
            self.counters[name] = 0
        self.version = None

    def handle_message(self, topic: str, payload: bytes | bytearray | str) -> bool:
        """Record one ``$SYS`` sample; return True when the topic is tracked."""
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, (bytes, bytearray)) else payload
        text = text.strip()
        if topic == VERSION_TOPIC:
            self.version = parse_version(text)
            return True
        name = COUNTER_TOPICS.get(topic)
        if name is None:
            return False
        self.counters[name] = safe_int(text, self.counters[name])
        return True

    def snapshot(self) -> dict[str, Any]:
        return dict(self.counters)

    async def run(self) -> None:
        """Subscribe and sample until cancelled, reconnecting with backoff."""
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=1, max=30) + tenacity.wait_random(0, 1),
            retry=tenacity.retry_if_exception_type((aiomqtt.MqttError, OSError, asyncio.TimeoutError)),
            before_sleep=_log_retry_attempt,
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    try:
                        await self._sample_session()
                    finally:
                        self.trigger("disconnect")
        except asyncio.CancelledError:
            logger.info("$SYS sampler stopping.")
            self.trigger("disconnect")
            raise

    async def _sample_session(self) -> None:
        self.trigger("connect")
        async with aiomqtt.Client(
            hostname=self.hostname,
            port=self.config.broker_port,
            username=self.config.monitor_username or None,
            password=self.config.monitor_password or None,
            identifier="mosqctl-sysstats",
            logger=logging.getLogger("mosqctl.sysstats.client"),
        ) as client:
            await client.subscribe(SYS_TOPIC_FILTER)
            self.trigger("subscribed")
            logger.info("Subscribed to %s on %s:%d", SYS_TOPIC_FILTER, self.hostname, self.config.broker_port)
            async for message in client.messages:
                payload = message.payload
                if not isinstance(payload, (bytes, bytearray, str)):
                    payload = str(payload)
                self.handle_message(str(message.topic), payload)


__all__ = ["COUNTER_TOPICS", "SYS_TOPIC_FILTER", "SysStatsMonitor", "VERSION_TOPIC", "parse_version"]
