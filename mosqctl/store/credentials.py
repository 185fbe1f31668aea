"""User and access-rule store.

Every successful mutation persists ``users.json`` / ``acls.json`` and then
recompiles both the broker ``passwd`` and ``acl`` files before returning.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import msgspec

from ..compiler import ArtifactWriter
from ..config.const import PASSWORD_REDACTED
from ..config.model import AccessRule, DataLayout, ImportResult, ManagerConfig, UserRecord
from ..errors import ConflictError, NotFoundError, ValidationError
from ..security.passwords import hash_password, is_password_hash, verify_password
from ..validation import ensure_valid, validate_password, validate_rule, validate_user, validate_username
from .datastore import RecordFile

logger = logging.getLogger("mosqctl.credentials")


class ExportedUser(msgspec.Struct):
    username: str
    password: str = PASSWORD_REDACTED
    enabled: bool = True


class SecurityExport(msgspec.Struct):
    users: list[ExportedUser] = msgspec.field(default_factory=list)
    acls: list[AccessRule] = msgspec.field(default_factory=list)


def decode_payload(payload: str | bytes | dict[str, Any], *, subject: str) -> dict[str, Any]:
    """Accept a JSON document or an already-decoded mapping."""
    if isinstance(payload, dict):
        return payload
    try:
        decoded = msgspec.json.decode(payload)
    except msgspec.DecodeError as exc:
        raise ValidationError([f"malformed JSON: {exc}"], subject=subject) from exc
    if not isinstance(decoded, dict):
        raise ValidationError(["top-level value must be an object"], subject=subject)
    return decoded


class CredentialStore:
    """Owns broker users and ACL rules and keeps the compiled files in sync."""

    def __init__(self, config: ManagerConfig, layout: DataLayout, writer: ArtifactWriter) -> None:
        self.config = config
        self.layout = layout
        self.writer = writer
        self._users_file: RecordFile[UserRecord] = RecordFile(layout.users_file, UserRecord)
        self._rules_file: RecordFile[AccessRule] = RecordFile(layout.acls_file, AccessRule)
        self._users: list[UserRecord] = []
        self._rules: list[AccessRule] = []
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        """Load persisted records and make sure the compiled files exist."""
        async with self._lock:
            self._users = await self._users_file.load()
            self._rules = await self._rules_file.load()
            await self._compile()
        logger.info("Credential store loaded: %d users, %d ACL rules", len(self._users), len(self._rules))

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def _find_user(self, username: str, users: list[UserRecord] | None = None) -> UserRecord | None:
        for user in self._users if users is None else users:
            if user.username == username:
                return user
        return None

    def _require_user(self, username: str) -> UserRecord:
        user = self._find_user(username)
        if user is None:
            raise NotFoundError(f"User '{username}' not found")
        return user

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(hash_password, password, iterations=self.config.password_iterations)

    async def add_user(self, username: str, password: str, *, enabled: bool = True) -> UserRecord:
        ensure_valid(validate_user(username, password), subject="User")
        async with self._lock:
            if self._find_user(username) is not None:
                raise ConflictError(f"User '{username}' already exists")
            record = UserRecord(username=username, password_hash=await self._hash(password), enabled=enabled)
            await self._commit(users=[*self._users, record])
        logger.info("User '%s' added", username)
        return record

    async def update_user(
        self,
        username: str,
        *,
        password: str | None = None,
        enabled: bool | None = None,
    ) -> UserRecord:
        if password is not None:
            ensure_valid(validate_password(password), subject="User")
        async with self._lock:
            current = self._require_user(username)
            changes: dict[str, Any] = {}
            if password is not None:
                changes["password_hash"] = await self._hash(password)
            if enabled is not None:
                changes["enabled"] = enabled
            user = msgspec.structs.replace(current, **changes)
            await self._commit(users=[user if item is current else item for item in self._users])
        logger.info("User '%s' updated", username)
        return user

    async def remove_user(self, username: str) -> None:
        async with self._lock:
            user = self._require_user(username)
            await self._commit(users=[item for item in self._users if item is not user])
        logger.info("User '%s' removed", username)

    async def enable_user(self, username: str) -> UserRecord:
        return await self.update_user(username, enabled=True)

    async def disable_user(self, username: str) -> UserRecord:
        return await self.update_user(username, enabled=False)

    async def change_password(self, username: str, new_password: str) -> UserRecord:
        ensure_valid(validate_password(new_password), subject="User")
        return await self.update_user(username, password=new_password)

    async def verify_user(self, username: str, password: str) -> bool:
        user = self._find_user(username)
        if user is None or not user.enabled:
            return False
        return await asyncio.to_thread(verify_password, password, user.password_hash)

    def list_users(self) -> list[dict[str, Any]]:
        """Users without their password hashes."""
        return [{"username": user.username, "enabled": user.enabled} for user in self._users]

    # ------------------------------------------------------------------
    # Access rules
    # ------------------------------------------------------------------

    async def add_rule(self, rule: AccessRule) -> AccessRule:
        ensure_valid(validate_rule(rule), subject="ACL")
        async with self._lock:
            if rule in self._rules:
                raise ConflictError("Identical ACL rule already exists")
            await self._commit(rules=[*self._rules, rule])
        logger.info("ACL rule added for topic %s", rule.topic)
        return rule

    async def remove_rule(self, rule: AccessRule) -> None:
        async with self._lock:
            if rule not in self._rules:
                raise NotFoundError("ACL rule not found")
            rules = list(self._rules)
            rules.remove(rule)
            await self._commit(rules=rules)
        logger.info("ACL rule removed for topic %s", rule.topic)

    def list_rules(self) -> list[AccessRule]:
        return list(self._rules)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_config(self) -> str:
        """JSON export of users and rules; passwords are always redacted."""
        export = SecurityExport(
            users=[ExportedUser(username=user.username, enabled=user.enabled) for user in self._users],
            acls=list(self._rules),
        )
        return msgspec.json.format(msgspec.json.encode(export), indent=2).decode("utf-8")

    async def import_config(self, payload: str | bytes | dict[str, Any], *, overwrite: bool = False) -> ImportResult:
        data = decode_payload(payload, subject="Security import")
        result = ImportResult()

        async with self._lock:
            users = list(self._users)
            rules = list(self._rules)
            for entry in data.get("users") or []:
                record = await self._import_user(entry)
                if record is None:
                    result.skipped_users += 1
                    continue
                existing = self._find_user(record.username, users)
                if existing is None:
                    users.append(record)
                    result.users += 1
                elif overwrite:
                    users[users.index(existing)] = record
                    result.users += 1
                else:
                    result.skipped_users += 1

            for entry in data.get("acls") or []:
                rule = self._import_rule(entry)
                if rule is None:
                    result.skipped_acls += 1
                elif rule not in rules:
                    rules.append(rule)
                    result.acls += 1
                elif overwrite:
                    # Identical tuple; counted as imported so a re-import reports the full set.
                    result.acls += 1
                else:
                    result.skipped_acls += 1

            if result.users or result.acls:
                await self._commit(users=users, rules=rules)

        logger.info(
            "Security import finished: %d users (%d skipped), %d ACL rules (%d skipped)",
            result.users,
            result.skipped_users,
            result.acls,
            result.skipped_acls,
        )
        return result

    async def _import_user(self, entry: Any) -> UserRecord | None:
        if not isinstance(entry, dict):
            return None
        username = entry.get("username")
        password = entry.get("password")
        if password == PASSWORD_REDACTED:
            logger.info("Skipping user '%s' with redacted password", username)
            return None
        if not isinstance(username, str) or not isinstance(password, str):
            logger.info("Skipping malformed user entry")
            return None

        if is_password_hash(password):
            errors = validate_username(username)
        else:
            errors = validate_user(username, password)
        if errors:
            logger.info("Skipping invalid user '%s': %s", username, ", ".join(errors))
            return None

        password_hash = password if is_password_hash(password) else await self._hash(password)
        return UserRecord(username=username, password_hash=password_hash, enabled=bool(entry.get("enabled", True)))

    @staticmethod
    def _import_rule(entry: Any) -> AccessRule | None:
        try:
            rule = msgspec.convert(entry, AccessRule)
        except msgspec.ValidationError as exc:
            logger.info("Skipping malformed ACL entry: %s", exc)
            return None
        errors = validate_rule(rule)
        if errors:
            logger.info("Skipping invalid ACL: %s", ", ".join(errors))
            return None
        return rule

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _compile(self) -> None:
        await self.writer.write_password_file(self._users)
        await self.writer.write_acl_file(self._rules)

    async def _commit(
        self,
        *,
        users: list[UserRecord] | None = None,
        rules: list[AccessRule] | None = None,
    ) -> None:
        """Persist and compile the candidate lists, adopting them only once every write succeeded."""
        users = self._users if users is None else users
        rules = self._rules if rules is None else rules
        await self._users_file.save(users)
        await self._rules_file.save(rules)
        await self.writer.write_password_file(users)
        await self.writer.write_acl_file(rules)
        self._users = users
        self._rules = rules


__all__ = ["CredentialStore", "ExportedUser", "SecurityExport", "decode_payload"]
