"""MQTT utility helpers for mosqctl components.

Shared TLS setup for the bridge connectivity probe and the $SYS monitor.
"""

from __future__ import annotations

import logging
import ssl
from pathlib import Path

from mosqctl.config.const import MQTT_TLS_MIN_VERSION
from mosqctl.config.model import BridgeDefinition

logger = logging.getLogger("mosqctl.util.mqtt")


def build_tls_context(
    cafile: str | None,
    certfile: str | None = None,
    keyfile: str | None = None,
) -> ssl.SSLContext:
    """Create a client-side ``ssl.SSLContext`` from optional PEM paths."""
    try:
        if cafile:
            if not Path(cafile).exists():
                raise RuntimeError(f"MQTT TLS CA file missing: {cafile}")
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=cafile)
        else:
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

        context.minimum_version = MQTT_TLS_MIN_VERSION

        if certfile or keyfile:
            if not (certfile and keyfile):
                raise ValueError("Both certfile and keyfile must be provided for mTLS.")
            context.load_cert_chain(certfile, keyfile)

        return context
    except (OSError, ssl.SSLError, ValueError) as exc:
        raise RuntimeError(f"TLS setup failed: {exc}") from exc


def configure_tls_context(bridge: BridgeDefinition) -> ssl.SSLContext | None:
    """Create the TLS context a bridge probe should use, if any."""
    if not bridge.tls_enabled:
        return None
    return build_tls_context(bridge.tls_ca_path, bridge.tls_cert_path, bridge.tls_key_path)
