"""Error taxonomy shared by the compiler, stores and supervisor.

Each error carries ``http_status`` so a thin HTTP layer can pass results
through without re-classifying them.
"""

from __future__ import annotations

from collections.abc import Iterable


class ManagerError(Exception):
    """Base class for every error raised by mosqctl."""

    http_status: int = 500


class ValidationError(ManagerError):
    """Input violated one or more constraints.

    ``errors`` holds every violated constraint, not only the first one.
    """

    http_status = 400

    def __init__(self, errors: Iterable[str], *, subject: str = "configuration") -> None:
        self.errors = list(errors)
        self.subject = subject
        super().__init__(f"{subject} validation failed: {', '.join(self.errors)}")


class NotFoundError(ManagerError):
    """Referenced entity does not exist."""

    http_status = 404


class ConflictError(ManagerError):
    """Entity with the same identity already exists."""

    http_status = 409


class ExternalProcessError(ManagerError):
    """The broker (or another external binary) failed to start or respond."""

    def __init__(
        self,
        reason: str,
        *,
        original: BaseException | None = None,
    ) -> None:
        message = reason if original is None else f"{reason}: {original}"
        super().__init__(message)
        self.reason = reason
        self.original = original


class ArtifactIOError(ManagerError):
    """Reading or writing a persisted file failed; on-disk state may be stale."""

    def __init__(
        self,
        path: str,
        *,
        original: BaseException | None = None,
    ) -> None:
        message = f"I/O failure on {path}" if original is None else f"I/O failure on {path}: {original}"
        super().__init__(message)
        self.path = path
        self.original = original


__all__ = [
    "ArtifactIOError",
    "ConflictError",
    "ExternalProcessError",
    "ManagerError",
    "NotFoundError",
    "ValidationError",
]
