"""Default values and limits for the broker manager."""

from __future__ import annotations

import ssl
from typing import Final

CONFIG_VERSION: Final[int] = 1

DEFAULT_DATA_DIR: Final[str] = "~/.mosqctl"
DEFAULT_BROKER_BINARY: Final[str] = "mosquitto"
DEFAULT_BROKER_HOST: Final[str] = "0.0.0.0"
DEFAULT_BROKER_PORT: Final[int] = 1883
DEFAULT_WEBSOCKET_PORT: Final[int] = 9001
DEFAULT_TLS_PORT: Final[int] = 8883
DEFAULT_MAX_CONNECTIONS: Final[int] = 1000
DEFAULT_LOG_LEVEL: Final[str] = "information"
LOG_LEVELS: Final[tuple[str, ...]] = ("error", "warning", "notice", "information", "debug")

DEFAULT_STATUS_CHECK_INTERVAL: Final[float] = 5.0
DEFAULT_HEALTH_CHECK_INTERVAL: Final[float] = 30.0
DEFAULT_MAX_RESTART_ATTEMPTS: Final[int] = 3
DEFAULT_RESTART_SETTLE_DELAY: Final[float] = 2.0
MIN_STATUS_CHECK_INTERVAL: Final[float] = 1.0
MIN_HEALTH_CHECK_INTERVAL: Final[float] = 5.0

# Restart thresholds for the status check path.
STATUS_FAILURE_RESTART_THRESHOLD: Final[int] = 2
STATUS_ERROR_RESTART_THRESHOLD: Final[int] = 3

DEFAULT_BRIDGE_CONNECT_TIMEOUT: Final[float] = 10.0
DEFAULT_STATUS_INTERVAL: Final[int] = 30
DEFAULT_BROKER_START_TIMEOUT: Final[float] = 10.0
DEFAULT_BROKER_STOP_TIMEOUT: Final[float] = 5.0

# Broker log rotation (copy then truncate; mosquitto keeps the file open).
DEFAULT_LOG_MAX_BYTES: Final[int] = 10 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT: Final[int] = 5
DEFAULT_MAINTENANCE_INTERVAL: Final[float] = 3600.0

USERNAME_MAX_LENGTH: Final[int] = 64
PASSWORD_MIN_LENGTH: Final[int] = 4
BRIDGE_MIN_KEEPALIVE: Final[int] = 5

PBKDF2_ITERATIONS: Final[int] = 10_000
PBKDF2_SALT_BYTES: Final[int] = 12
PBKDF2_KEY_BYTES: Final[int] = 32
PASSWORD_REDACTED: Final[str] = "[REDACTED]"

CERT_KEY_SIZE: Final[int] = 2048
CA_VALIDITY_YEARS: Final[int] = 10
SERVER_VALIDITY_YEARS: Final[int] = 5
CA_COMMON_NAME: Final[str] = "mosqctl Mosquitto CA"
CERT_ORGANIZATION: Final[str] = "mosqctl"
CERT_COUNTRY: Final[str] = "US"

PRIVATE_FILE_MODE: Final[int] = 0o600
PUBLIC_FILE_MODE: Final[int] = 0o644

MQTT_TLS_MIN_VERSION: Final[ssl.TLSVersion] = ssl.TLSVersion.TLSv1_2

SUPERVISOR_DEFAULT_MIN_BACKOFF: Final[float] = 1.0
SUPERVISOR_DEFAULT_MAX_BACKOFF: Final[float] = 30.0
SUPERVISOR_DEFAULT_RESTART_INTERVAL: Final[float] = 60.0
SUPERVISOR_MIN_RESTART_WINDOW: Final[float] = 10.0
