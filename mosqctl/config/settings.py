"""Settings loader for the broker manager.

Configuration is read from a JSON file (path given on the command line)
overlaid on the ``ManagerConfig`` defaults, then validated through
``ManagerConfigSchema``. Environment variables are not used as overrides.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import marshmallow
import msgspec

from ..errors import ArtifactIOError, ValidationError
from .model import ManagerConfig
from .schema import ManagerConfigSchema

logger = logging.getLogger(__name__)

def get_default_config() -> dict[str, Any]:
    """Provide default configuration values.

    Derived from ``ManagerConfig`` field defaults via ``msgspec.structs.fields()``
    so the struct stays the single source of truth.
    """
    defaults: dict[str, Any] = {}
    for fi in msgspec.structs.fields(ManagerConfig):
        if fi.default is not msgspec.NODEFAULT:
            defaults[fi.name] = fi.default
        elif fi.default_factory is not msgspec.NODEFAULT:
            defaults[fi.name] = fi.default_factory()
    defaults["install_command"] = list(defaults.get("install_command", ()))
    return defaults


def config_source(path: str | Path | None) -> str:
    """Where a configuration loaded from *path* comes from."""
    if path is None:
        return "defaults"
    config_path = Path(path).expanduser()
    return str(config_path) if config_path.exists() else "defaults"


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = msgspec.json.decode(path.read_bytes())
    except OSError as exc:
        raise ArtifactIOError(str(path), original=exc) from exc
    except msgspec.DecodeError as exc:
        raise ValidationError([f"malformed JSON: {exc}"], subject=str(path)) from exc
    if not isinstance(raw, dict):
        raise ValidationError(["top-level value must be an object"], subject=str(path))
    return raw


def merge_config(base: dict[str, Any], overrides: dict[str, Any]) -> ManagerConfig:
    """Merge *overrides* onto *base* and validate the result."""
    merged = dict(base)
    merged.update(overrides)
    try:
        return ManagerConfigSchema().load(merged)
    except marshmallow.ValidationError as exc:
        raise ValidationError(_flatten_messages(exc.messages)) from exc


def load_manager_config(path: str | Path | None = None) -> ManagerConfig:
    """Load configuration from *path* (if it exists) on top of the defaults."""
    overrides: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path).expanduser()
        if config_path.exists():
            overrides = _read_config_file(config_path)
        else:
            logger.warning("Configuration file %s not found; using defaults.", config_path)

    return merge_config(get_default_config(), overrides)


def config_to_dict(config: ManagerConfig) -> dict[str, Any]:
    """Serialisable view of *config* with secrets removed."""
    data = msgspec.to_builtins(config)
    if data.get("monitor_password"):
        data["monitor_password"] = "[REDACTED]"
    return data


def _flatten_messages(messages: Any, prefix: str = "") -> list[str]:
    if isinstance(messages, dict):
        flattened: list[str] = []
        for key, value in messages.items():
            name = "general" if key == "_schema" else str(key)
            flattened.extend(_flatten_messages(value, f"{prefix}{name}: " if name != "general" else prefix))
        return flattened
    if isinstance(messages, list):
        return [item for message in messages for item in _flatten_messages(message, prefix)]
    return [f"{prefix}{messages}"]


__all__ = [
    "config_source",
    "config_to_dict",
    "get_default_config",
    "load_manager_config",
    "merge_config",
]
