"""Input validators for users, access rules and bridges.

Every ``validate_*`` function returns the full list of violations (empty
when the input is acceptable); callers that need an exception use
:func:`ensure_valid`.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from .config.const import BRIDGE_MIN_KEEPALIVE, PASSWORD_MIN_LENGTH, USERNAME_MAX_LENGTH
from .config.model import AccessRule, BridgeDefinition, TopicRoute
from .errors import ValidationError

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_INVALID_PATH_CHARS = re.compile(r'[<>:"|?*]')

ACCESS_LEVELS = ("read", "write", "readwrite")
ROUTE_DIRECTIONS = ("in", "out", "both")
QOS_LEVELS = (0, 1, 2)


def is_valid_topic_pattern(pattern: str) -> bool:
    """Return True when *pattern* is a well-formed MQTT topic filter.

    ``+`` must fill a whole level; ``#`` must be the last level.
    """
    if not pattern:
        return False
    levels = pattern.split("/")
    for index, level in enumerate(levels):
        if "+" in level and level != "+":
            return False
        if "#" in level and (level != "#" or index != len(levels) - 1):
            return False
    return True


def is_valid_username(username: str) -> bool:
    return bool(username) and len(username) <= USERNAME_MAX_LENGTH and _USERNAME_RE.match(username) is not None


def is_valid_path(path: str) -> bool:
    return bool(path) and _INVALID_PATH_CHARS.search(path) is None


def validate_username(username: str | None) -> list[str]:
    if not username:
        return ["Username is required"]
    errors: list[str] = []
    if len(username) > USERNAME_MAX_LENGTH:
        errors.append(f"Username must be at most {USERNAME_MAX_LENGTH} characters long")
    if _USERNAME_RE.match(username) is None:
        errors.append("Username contains invalid characters")
    return errors


def validate_password(password: str | None) -> list[str]:
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        return [f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"]
    return []


def validate_user(username: str | None, password: str | None) -> list[str]:
    return validate_username(username) + validate_password(password)


def validate_rule(rule: AccessRule) -> list[str]:
    errors: list[str] = []
    if rule.username and rule.clientid:
        errors.append("Only one of username or client ID may be specified")
    if rule.access not in ACCESS_LEVELS:
        errors.append(f"Access must be one of {', '.join(ACCESS_LEVELS)}")
    if not rule.topic:
        errors.append("Topic pattern is required")
    elif not is_valid_topic_pattern(rule.topic):
        errors.append("Invalid topic pattern")
    if rule.username is not None:
        errors.extend(validate_username(rule.username))
    if rule.clientid is not None and (not rule.clientid.strip() or any(ch.isspace() for ch in rule.clientid)):
        errors.append("Client ID must be non-empty and contain no whitespace")
    return errors


def _validate_route(index: int, route: TopicRoute) -> list[str]:
    label = f"Topic {index + 1}"
    errors: list[str] = []
    if not route.pattern:
        errors.append(f"{label}: pattern is required")
    elif not is_valid_topic_pattern(route.pattern):
        errors.append(f"{label}: invalid topic pattern")
    if route.direction not in ROUTE_DIRECTIONS:
        errors.append(f"{label}: direction must be one of {', '.join(ROUTE_DIRECTIONS)}")
    if route.qos not in QOS_LEVELS:
        errors.append(f"{label}: QoS must be 0, 1 or 2")
    for name, prefix in (("local prefix", route.local_prefix), ("remote prefix", route.remote_prefix)):
        if prefix and ("+" in prefix or "#" in prefix):
            errors.append(f"{label}: {name} must not contain wildcards")
    return errors


def validate_bridge(bridge: BridgeDefinition) -> list[str]:
    errors: list[str] = []
    if not bridge.id or not bridge.id.strip():
        errors.append("Bridge ID is required")
    if not bridge.name or not bridge.name.strip():
        errors.append("Bridge name is required")
    if not bridge.remote_host or not bridge.remote_host.strip():
        errors.append("Remote host is required")
    if not 1 <= bridge.remote_port <= 65535:
        errors.append("Remote port must be between 1 and 65535")
    if bridge.keepalive < BRIDGE_MIN_KEEPALIVE:
        errors.append(f"Keep alive must be at least {BRIDGE_MIN_KEEPALIVE} seconds")
    if not bridge.topics:
        errors.append("At least one topic must be configured")
    for index, route in enumerate(bridge.topics):
        errors.extend(_validate_route(index, route))
    if bridge.tls_cert_path and not is_valid_path(bridge.tls_cert_path):
        errors.append("Invalid TLS certificate path")
    if bridge.tls_key_path and not is_valid_path(bridge.tls_key_path):
        errors.append("Invalid TLS key path")
    if bridge.tls_ca_path and not is_valid_path(bridge.tls_ca_path):
        errors.append("Invalid TLS CA path")
    return errors


def ensure_valid(errors: Iterable[str], *, subject: str) -> None:
    """Raise :class:`ValidationError` when *errors* is non-empty."""
    collected = list(errors)
    if collected:
        raise ValidationError(collected, subject=subject)


__all__ = [
    "ACCESS_LEVELS",
    "QOS_LEVELS",
    "ROUTE_DIRECTIONS",
    "ensure_valid",
    "is_valid_path",
    "is_valid_topic_pattern",
    "is_valid_username",
    "validate_bridge",
    "validate_password",
    "validate_rule",
    "validate_user",
    "validate_username",
]
