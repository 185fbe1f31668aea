"""Mosquitto broker manager package initialisation."""

__version__ = "1.0.0"

import logging
import sys

logger = logging.getLogger(__name__)


def _check_dependencies():
    """Verify the MQTT client stack is recent enough for bridge probes."""
    try:
        import paho.mqtt.client as mqtt

        # aiomqtt 2.x drives paho-mqtt through CallbackAPIVersion.VERSION2.
        # paho-mqtt 1.6.x imports fine but fails on the first connect.
        if not hasattr(mqtt, "CallbackAPIVersion"):
            logger.critical(
                "FATAL: Incompatible paho-mqtt version detected. "
                "mosqctl requires paho-mqtt 2.x with CallbackAPIVersion support."
            )
            sys.exit(1)

    except ImportError:
        # Missing packages surface as ImportError at the real import site.
        pass


_check_dependencies()
