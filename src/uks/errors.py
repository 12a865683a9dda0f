"""Structured errors raised by the store.

Every error carries a stable machine-readable ``code`` plus a human message,
so callers (CLI, protocol server, audit jobs) can report failures without
parsing text:

    try:
        store.add_relation("Redis", "Caching", "supports")
    except NotFoundError as exc:
        print(exc.code, exc)          # NOT_FOUND Cannot link: ...
        print(exc.to_dict())
"""

from __future__ import annotations

from typing import Any


class UksError(Exception):
    """Base class for all store errors."""

    code = "UKS_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(UksError, ValueError):
    """Malformed or empty input to a public operation."""

    code = "VALIDATION_ERROR"


class LockError(UksError):
    """The storage lock could not be acquired within the retry budget."""

    code = "LOCK_ERROR"
    retryable = True


class StorageError(UksError):
    """Read/write/copy failure other than a missing file."""

    code = "STORAGE_ERROR"


class NotFoundError(UksError, LookupError):
    """A relation endpoint or a backup to restore does not exist."""

    code = "NOT_FOUND"


class PluginError(UksError):
    """A plugin could not be registered or misbehaved."""

    code = "PLUGIN_ERROR"
