"""PBKDF2-SHA256 password hashing in the format the broker plugin expects.

Hashes are stored as ``PBKDF2$sha256$<iterations>$<salt-b64>$<hash-b64>``.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import secrets

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config.const import PBKDF2_ITERATIONS, PBKDF2_KEY_BYTES, PBKDF2_SALT_BYTES

HASH_PREFIX = "PBKDF2"
HASH_ALGORITHM = "sha256"


def pbkdf2_sha256(password: str, salt: bytes, iterations: int, length: int = PBKDF2_KEY_BYTES) -> bytes:
    """Derive a key using PBKDF2-HMAC-SHA256 via native cryptography library."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    iterations = max(iterations, PBKDF2_ITERATIONS)
    salt = secrets.token_bytes(PBKDF2_SALT_BYTES)
    digest = pbkdf2_sha256(password, salt, iterations)
    return "$".join(
        (
            HASH_PREFIX,
            HASH_ALGORITHM,
            str(iterations),
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(digest).decode("ascii"),
        )
    )


def _split_hash(encoded: str) -> tuple[int, bytes, bytes] | None:
    parts = encoded.split("$")
    if len(parts) != 5 or parts[0] != HASH_PREFIX or parts[1] != HASH_ALGORITHM:
        return None
    try:
        iterations = int(parts[2])
        salt = base64.b64decode(parts[3], validate=True)
        digest = base64.b64decode(parts[4], validate=True)
    except (ValueError, binascii.Error):
        return None
    if iterations <= 0 or not salt or not digest:
        return None
    return iterations, salt, digest


def is_password_hash(value: str) -> bool:
    """Return True when *value* already looks like a stored PBKDF2 hash."""
    return _split_hash(value) is not None


def verify_password(password: str, encoded: str) -> bool:
    """Check *password* against a stored hash using the hash's own parameters."""
    parsed = _split_hash(encoded)
    if parsed is None:
        return False
    iterations, salt, digest = parsed
    candidate = pbkdf2_sha256(password, salt, iterations, len(digest))
    return hmac.compare_digest(candidate, digest)


__all__ = ["hash_password", "is_password_hash", "pbkdf2_sha256", "verify_password"]
