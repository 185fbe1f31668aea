"""Compile structured configuration into the files Mosquitto reads.

The ``render_*`` functions are pure: identical input yields byte-identical
output and nothing is validated here. :class:`ArtifactWriter` puts the
rendered text on disk atomically with the permissions each file needs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from .config.const import LOG_LEVELS, PRIVATE_FILE_MODE, PUBLIC_FILE_MODE
from .config.model import AccessRule, BridgeDefinition, DataLayout, ManagerConfig, TopicRoute, UserRecord
from .util import write_file_atomic

logger = logging.getLogger("mosqctl.compiler")

ACL_HEADER = (
    "# ACL file generated by mosqctl",
    "# Do not edit manually - changes will be overwritten",
)


def render_password_file(users: Iterable[UserRecord]) -> str:
    lines = [f"{user.username}:{user.password_hash}" for user in users if user.enabled]
    return "\n".join(lines) + "\n"


def _group_rules(
    rules: Iterable[AccessRule],
) -> tuple[list[AccessRule], dict[str, list[AccessRule]], dict[str, list[AccessRule]]]:
    global_rules: list[AccessRule] = []
    by_user: dict[str, list[AccessRule]] = {}
    by_client: dict[str, list[AccessRule]] = {}
    for rule in rules:
        if rule.username:
            by_user.setdefault(rule.username, []).append(rule)
        elif rule.clientid:
            by_client.setdefault(rule.clientid, []).append(rule)
        else:
            global_rules.append(rule)
    return global_rules, by_user, by_client


def _topic_line(rule: AccessRule) -> str:
    return f"topic {rule.access} {rule.topic}"


def render_acl_file(rules: Iterable[AccessRule]) -> str:
    """Render the ACL file.

    Global rules come first, then one ``user`` block per username and one
    ``clientid`` block per client id, each in first-seen order.
    """
    global_rules, by_user, by_client = _group_rules(rules)

    lines: list[str] = [*ACL_HEADER, ""]
    if global_rules:
        lines.append("# Global ACLs")
        lines.extend(_topic_line(rule) for rule in global_rules)
        lines.append("")
    for username, user_rules in by_user.items():
        lines.append(f"user {username}")
        lines.extend(_topic_line(rule) for rule in user_rules)
        lines.append("")
    for clientid, client_rules in by_client.items():
        lines.append(f"clientid {clientid}")
        lines.extend(_topic_line(rule) for rule in client_rules)
        lines.append("")
    return "\n".join(lines)


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _log_types(level: str) -> list[str]:
    # Mosquitto log_type entries are additive; enable everything up to *level*.
    try:
        cutoff = LOG_LEVELS.index(level)
    except ValueError:
        cutoff = LOG_LEVELS.index("information")
    return list(LOG_LEVELS[: cutoff + 1])


def _route_line(route: TopicRoute) -> str:
    parts = ["topic", route.pattern, route.direction, str(route.qos)]
    if route.local_prefix or route.remote_prefix:
        parts.append(route.local_prefix or '""')
        parts.append(route.remote_prefix or '""')
    return " ".join(parts)


def render_bridge_section(bridge: BridgeDefinition) -> list[str]:
    lines = [
        f"connection {bridge.id}",
        f"address {bridge.remote_host}:{bridge.remote_port}",
    ]
    if bridge.remote_username:
        lines.append(f"remote_username {bridge.remote_username}")
    if bridge.remote_password:
        lines.append(f"remote_password {bridge.remote_password}")
    lines.append(f"keepalive_interval {bridge.keepalive}")
    lines.append(f"cleansession {_bool(bridge.clean_session)}")
    lines.append(f"try_private {_bool(bridge.try_private)}")
    if bridge.tls_enabled:
        if bridge.tls_ca_path:
            lines.append(f"bridge_cafile {bridge.tls_ca_path}")
        if bridge.tls_cert_path:
            lines.append(f"bridge_certfile {bridge.tls_cert_path}")
        if bridge.tls_key_path:
            lines.append(f"bridge_keyfile {bridge.tls_key_path}")
    lines.extend(_route_line(route) for route in bridge.topics)
    return lines


def render_broker_config(
    config: ManagerConfig,
    bridges: Sequence[BridgeDefinition],
    layout: DataLayout,
) -> str:
    lines: list[str] = [
        "# Mosquitto configuration generated by mosqctl",
        "# Do not edit manually - changes will be overwritten",
        "",
        f"pid_file {layout.pid_file}",
        "per_listener_settings false",
        "",
        f"listener {config.broker_port} {config.broker_host}",
        f"max_connections {config.max_connections}",
    ]

    if config.enable_websockets:
        lines += ["", f"listener {config.websocket_port} {config.broker_host}", "protocol websockets"]

    if config.tls_enabled:
        lines += ["", f"listener {config.tls_port} {config.broker_host}"]
        if config.tls_ca_path:
            lines.append(f"cafile {config.tls_ca_path}")
        if config.tls_cert_path:
            lines.append(f"certfile {config.tls_cert_path}")
        if config.tls_key_path:
            lines.append(f"keyfile {config.tls_key_path}")

    lines += ["", f"allow_anonymous {_bool(config.allow_anonymous)}"]
    if config.enable_security:
        lines.append(f"password_file {layout.password_file}")
        lines.append(f"acl_file {layout.acl_file}")

    lines += ["", f"persistence {_bool(config.persistence)}"]
    if config.persistence:
        location = config.persistence_location or str(layout.persistence_dir)
        lines.append(f"persistence_location {location.rstrip('/')}/")

    lines.append("")
    if config.enable_logging:
        lines.append(f"log_dest file {layout.log_file}")
        lines.extend(f"log_type {log_type}" for log_type in _log_types(config.log_level))
        lines.append("connection_messages true")
        lines.append("log_timestamp true")
    else:
        lines.append("log_dest none")

    for bridge in bridges:
        if not bridge.enabled:
            continue
        lines.append("")
        lines.extend(render_bridge_section(bridge))

    return "\n".join(lines) + "\n"


class ArtifactWriter:
    """Write compiled artifacts into the data directory."""

    def __init__(self, layout: DataLayout) -> None:
        self.layout = layout

    async def write_password_file(self, users: Sequence[UserRecord]) -> None:
        text = render_password_file(users)
        await write_file_atomic(self.layout.password_file, text.encode("utf-8"), mode=PRIVATE_FILE_MODE)
        logger.info("Password file generated with %d users", sum(1 for user in users if user.enabled))

    async def write_acl_file(self, rules: Sequence[AccessRule]) -> None:
        text = render_acl_file(rules)
        await write_file_atomic(self.layout.acl_file, text.encode("utf-8"), mode=PUBLIC_FILE_MODE)
        logger.info("ACL file generated with %d rules", len(rules))

    async def write_broker_config(self, config: ManagerConfig, bridges: Sequence[BridgeDefinition]) -> None:
        text = render_broker_config(config, bridges, self.layout)
        # Bridge sections may hold remote passwords.
        await write_file_atomic(self.layout.broker_config_file, text.encode("utf-8"), mode=PRIVATE_FILE_MODE)
        logger.info(
            "Broker configuration generated with %d active bridges",
            sum(1 for bridge in bridges if bridge.enabled),
        )


__all__ = [
    "ACL_HEADER",
    "ArtifactWriter",
    "render_acl_file",
    "render_bridge_section",
    "render_broker_config",
    "render_password_file",
]
