"""Marshmallow schema for ManagerConfig validation."""

from __future__ import annotations

import os
from typing import Any, Dict

from marshmallow import Schema, ValidationError, fields, post_load, pre_load, validate, validates_schema

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
    LOG_LEVELS,
    MIN_HEALTH_CHECK_INTERVAL,
    MIN_STATUS_CHECK_INTERVAL,
    PBKDF2_ITERATIONS,
)
from .model import ManagerConfig

_PORT = validate.Range(min=1, max=65535)
_INVALID_PATH_CHARS = frozenset('<>:"|?*')


class ManagerConfigSchema(Schema):
    """Declarative validation schema for the manager configuration."""

    config_version = fields.Int(load_default=CONFIG_VERSION, validate=validate.Range(min=1))
    data_dir = fields.Str(load_default=DEFAULT_DATA_DIR, validate=validate.Length(min=1))

    # Broker
    broker_binary = fields.Str(load_default=DEFAULT_BROKER_BINARY, validate=validate.Length(min=1))
    broker_host = fields.Str(load_default=DEFAULT_BROKER_HOST, validate=validate.Length(min=1))
    broker_port = fields.Int(load_default=DEFAULT_BROKER_PORT, validate=_PORT)
    enable_websockets = fields.Bool(load_default=True)
    websocket_port = fields.Int(load_default=DEFAULT_WEBSOCKET_PORT, validate=_PORT)
    max_connections = fields.Int(load_default=DEFAULT_MAX_CONNECTIONS, validate=validate.Range(min=1))
    allow_anonymous = fields.Bool(load_default=False)
    enable_logging = fields.Bool(load_default=True)
    log_level = fields.Str(load_default=DEFAULT_LOG_LEVEL, validate=validate.OneOf(LOG_LEVELS))
    persistence = fields.Bool(load_default=True)
    persistence_location = fields.Str(load_default=None, allow_none=True)
    enable_security = fields.Bool(load_default=True)

    # TLS
    tls_enabled = fields.Bool(load_default=False)
    tls_port = fields.Int(load_default=DEFAULT_TLS_PORT, validate=_PORT)
    tls_cert_path = fields.Str(load_default=None, allow_none=True)
    tls_key_path = fields.Str(load_default=None, allow_none=True)
    tls_ca_path = fields.Str(load_default=None, allow_none=True)
    auto_generate_certificates = fields.Bool(load_default=True)

    # Supervision
    auto_start = fields.Bool(load_default=True)
    debug_logging = fields.Bool(load_default=False)
    status_check_interval = fields.Float(
        load_default=DEFAULT_STATUS_CHECK_INTERVAL,
        validate=validate.Range(min=MIN_STATUS_CHECK_INTERVAL),
    )
    health_check_interval = fields.Float(
        load_default=DEFAULT_HEALTH_CHECK_INTERVAL,
        validate=validate.Range(min=MIN_HEALTH_CHECK_INTERVAL),
    )
    max_restart_attempts = fields.Int(load_default=DEFAULT_MAX_RESTART_ATTEMPTS, validate=validate.Range(min=0))
    restart_settle_delay = fields.Float(load_default=DEFAULT_RESTART_SETTLE_DELAY, validate=validate.Range(min=0.0))
    bridge_connect_timeout = fields.Float(
        load_default=DEFAULT_BRIDGE_CONNECT_TIMEOUT,
        validate=validate.Range(min=0.1),
    )
    broker_start_timeout = fields.Float(load_default=DEFAULT_BROKER_START_TIMEOUT, validate=validate.Range(min=0.1))
    status_interval = fields.Int(load_default=DEFAULT_STATUS_INTERVAL, validate=validate.Range(min=1))
    sys_stats_enabled = fields.Bool(load_default=True)
    monitor_username = fields.Str(load_default=None, allow_none=True)
    monitor_password = fields.Str(load_default=None, allow_none=True)
    install_command = fields.List(fields.Str(), load_default=tuple)
    password_iterations = fields.Int(load_default=PBKDF2_ITERATIONS, validate=validate.Range(min=PBKDF2_ITERATIONS))
    log_max_bytes = fields.Int(load_default=DEFAULT_LOG_MAX_BYTES, validate=validate.Range(min=1024))
    log_backup_count = fields.Int(load_default=DEFAULT_LOG_BACKUP_COUNT, validate=validate.Range(min=0))
    maintenance_interval = fields.Float(load_default=DEFAULT_MAINTENANCE_INTERVAL, validate=validate.Range(min=1.0))

    @validates_schema
    def validate_version(self, data: Dict[str, Any], **kwargs: Any) -> None:
        version = data.get("config_version", CONFIG_VERSION)
        if version > CONFIG_VERSION:
            raise ValidationError(
                f"config_version {version} is newer than supported version {CONFIG_VERSION}",
                field_name="config_version",
            )

    @validates_schema
    def validate_listener_ports(self, data: Dict[str, Any], **kwargs: Any) -> None:
        ports = [("broker_port", data.get("broker_port"))]
        if data.get("enable_websockets"):
            ports.append(("websocket_port", data.get("websocket_port")))
        if data.get("tls_enabled"):
            ports.append(("tls_port", data.get("tls_port")))
        seen: dict[Any, str] = {}
        for name, port in ports:
            if port in seen:
                raise ValidationError(f"{name} collides with {seen[port]} ({port})", field_name=name)
            seen[port] = name

    @validates_schema
    def validate_tls_material(self, data: Dict[str, Any], **kwargs: Any) -> None:
        for name in ("tls_cert_path", "tls_key_path", "tls_ca_path"):
            value = data.get(name)
            if value and _INVALID_PATH_CHARS.intersection(value):
                raise ValidationError(f"{name} contains invalid characters", field_name=name)

        if not data.get("tls_enabled") or data.get("auto_generate_certificates"):
            return
        if not data.get("tls_cert_path") or not data.get("tls_key_path"):
            raise ValidationError(
                "TLS certificate and key paths are required when TLS is enabled",
                field_name="tls_cert_path",
            )

    @pre_load
    def strip_strings(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        cleaned = dict(data)
        for key, value in data.items():
            if isinstance(value, str):
                stripped = value.strip()
                # Empty optional paths mean "not configured".
                cleaned[key] = stripped if stripped or not key.endswith(("_path", "_location")) else None
        return cleaned

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> ManagerConfig:
        data["data_dir"] = os.path.abspath(os.path.expanduser(data["data_dir"]))
        data["install_command"] = tuple(data.get("install_command") or ())
        return ManagerConfig(**data)


__all__ = ["ManagerConfigSchema"]
