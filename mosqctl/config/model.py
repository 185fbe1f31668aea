"""Data model for the broker manager configuration and persisted records."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import msgspec

from .const import (
    CONFIG_VERSION,
    DEFAULT_BRIDGE_CONNECT_TIMEOUT,
    DEFAULT_BROKER_BINARY,
    DEFAULT_BROKER_HOST,
    DEFAULT_BROKER_PORT,
    DEFAULT_BROKER_START_TIMEOUT,
    DEFAULT_DATA_DIR,
    DEFAULT_HEALTH_CHECK_INTERVAL,
    DEFAULT_LOG_BACKUP_COUNT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_LOG_MAX_BYTES,
    DEFAULT_MAINTENANCE_INTERVAL,
    DEFAULT_MAX_CONNECTIONS,
    DEFAULT_MAX_RESTART_ATTEMPTS,
    DEFAULT_RESTART_SETTLE_DELAY,
    DEFAULT_STATUS_CHECK_INTERVAL,
    DEFAULT_STATUS_INTERVAL,
    DEFAULT_TLS_PORT,
    DEFAULT_WEBSOCKET_PORT,
    PBKDF2_ITERATIONS,
)

AccessLevel = Literal["read", "write", "readwrite"]
RouteDirection = Literal["in", "out", "both"]
QOSLevel = Literal[0, 1, 2]
LogLevel = Literal["error", "warning", "notice", "information", "debug"]


class ManagerConfig(msgspec.Struct):
    """Strongly typed configuration owned by the manager and passed to components."""

    config_version: int = CONFIG_VERSION
    data_dir: str = DEFAULT_DATA_DIR
    broker_binary: str = DEFAULT_BROKER_BINARY
    broker_host: str = DEFAULT_BROKER_HOST
    broker_port: int = DEFAULT_BROKER_PORT
    enable_websockets: bool = True
    websocket_port: int = DEFAULT_WEBSOCKET_PORT
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    allow_anonymous: bool = False
    enable_logging: bool = True
    log_level: LogLevel = DEFAULT_LOG_LEVEL
    persistence: bool = True
    persistence_location: str | None = None
    enable_security: bool = True
    tls_enabled: bool = False
    tls_port: int = DEFAULT_TLS_PORT
    tls_cert_path: str | None = None
    tls_key_path: str | None = None
    tls_ca_path: str | None = None
    auto_generate_certificates: bool = True
    auto_start: bool = True
    debug_logging: bool = False
    status_check_interval: float = DEFAULT_STATUS_CHECK_INTERVAL
    health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL
    max_restart_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS
    restart_settle_delay: float = DEFAULT_RESTART_SETTLE_DELAY
    bridge_connect_timeout: float = DEFAULT_BRIDGE_CONNECT_TIMEOUT
    broker_start_timeout: float = DEFAULT_BROKER_START_TIMEOUT
    status_interval: int = DEFAULT_STATUS_INTERVAL
    sys_stats_enabled: bool = True
    monitor_username: str | None = None
    monitor_password: str | None = None
    install_command: tuple[str, ...] = ()
    password_iterations: int = PBKDF2_ITERATIONS
    log_max_bytes: int = DEFAULT_LOG_MAX_BYTES
    log_backup_count: int = DEFAULT_LOG_BACKUP_COUNT
    maintenance_interval: float = DEFAULT_MAINTENANCE_INTERVAL


class UserRecord(msgspec.Struct):
    username: str
    password_hash: str
    enabled: bool = True


class AccessRule(msgspec.Struct, frozen=True, omit_defaults=True):
    """One ACL line. No username and no clientid means a global rule."""

    topic: str
    access: AccessLevel = "read"
    username: str | None = None
    clientid: str | None = None

    @property
    def is_global(self) -> bool:
        return not self.username and not self.clientid


class TopicRoute(msgspec.Struct, omit_defaults=True):
    pattern: str
    direction: RouteDirection = "both"
    qos: QOSLevel = 0
    local_prefix: str | None = None
    remote_prefix: str | None = None


class BridgeDefinition(msgspec.Struct, omit_defaults=True):
    id: str
    name: str
    remote_host: str
    remote_port: int = 1883
    enabled: bool = True
    remote_username: str | None = None
    remote_password: str | None = None
    topics: list[TopicRoute] = msgspec.field(default_factory=list)
    tls_enabled: bool = False
    tls_cert_path: str | None = None
    tls_key_path: str | None = None
    tls_ca_path: str | None = None
    keepalive: int = 60
    clean_session: bool = True
    try_private: bool = True


class BrokerStatus(msgspec.Struct):
    """Live status reported by the broker process handle."""

    running: bool = False
    pid: int | None = None
    uptime: float | None = None
    version: str | None = None
    connected_clients: int = 0
    total_connections: int = 0
    messages_received: int = 0
    messages_published: int = 0
    bytes_received: int = 0
    bytes_published: int = 0

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class ImportResult(msgspec.Struct):
    users: int = 0
    acls: int = 0
    bridges: int = 0
    skipped_users: int = 0
    skipped_acls: int = 0
    skipped_bridges: int = 0

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


@dataclass(slots=True, frozen=True)
class DataLayout:
    """Paths of every file the manager owns inside ``data_dir``."""

    root: Path

    @classmethod
    def from_config(cls, config: ManagerConfig) -> DataLayout:
        return cls(Path(os.path.abspath(os.path.expanduser(config.data_dir))))

    @property
    def users_file(self) -> Path:
        return self.root / "users.json"

    @property
    def acls_file(self) -> Path:
        return self.root / "acls.json"

    @property
    def bridges_file(self) -> Path:
        return self.root / "bridges.json"

    @property
    def password_file(self) -> Path:
        return self.root / "passwd"

    @property
    def acl_file(self) -> Path:
        return self.root / "acl"

    @property
    def broker_config_file(self) -> Path:
        return self.root / "mosquitto.conf"

    @property
    def pid_file(self) -> Path:
        return self.root / "mosquitto.pid"

    @property
    def log_file(self) -> Path:
        return self.root / "mosquitto.log"

    @property
    def status_file(self) -> Path:
        return self.root / "status.json"

    @property
    def persistence_dir(self) -> Path:
        return self.root / "persistence"

    @property
    def certs_dir(self) -> Path:
        return self.root / "certs"

    @property
    def ca_key(self) -> Path:
        return self.certs_dir / "ca-key.pem"

    @property
    def ca_cert(self) -> Path:
        return self.certs_dir / "ca-cert.pem"

    @property
    def server_key(self) -> Path:
        return self.certs_dir / "server-key.pem"

    @property
    def server_cert(self) -> Path:
        return self.certs_dir / "server-cert.pem"


__all__ = [
    "AccessLevel",
    "AccessRule",
    "BridgeDefinition",
    "BrokerStatus",
    "DataLayout",
    "ImportResult",
    "LogLevel",
    "ManagerConfig",
    "QOSLevel",
    "RouteDirection",
    "TopicRoute",
    "UserRecord",
]
