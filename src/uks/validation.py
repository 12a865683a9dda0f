"""Input checks shared by the public operations.

All checks run before any lock is taken and raise ValidationError.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from uks.errors import ValidationError

DEFAULT_CONTEXT = "default"

_CONTEXT_RE = re.compile(r"[A-Za-z0-9_-]*")


def require_string(value: Any, field_name: str) -> str:
    """Return value stripped; raise unless it is a non-empty string."""
    if not isinstance(value, str) or not value.strip():
        msg = f"{field_name} must be a non-empty string"
        raise ValidationError(msg, {"field": field_name, "received": type(value).__name__})
    return value.strip()


def sanitize_string(value: Any, field_name: str, max_length: int = 1000) -> str:
    text = require_string(value, field_name)
    if len(text) > max_length:
        msg = f"{field_name} exceeds maximum length of {max_length}"
        raise ValidationError(
            msg,
            {"field": field_name, "max_length": max_length, "actual_length": len(text)},
        )
    return text


def require_enum(value: Any, allowed: list[str], field_name: str) -> str:
    text = require_string(value, field_name)
    if text not in allowed:
        msg = f"{field_name} must be one of: {', '.join(allowed)}"
        raise ValidationError(msg, {"field": field_name, "allowed": allowed, "received": text})
    return text


def validate_observations(value: Any) -> list[str]:
    """Observations are an optional list of strings. None means empty."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        msg = "observations must be a list"
        raise ValidationError(msg, {"received": type(value).__name__})
    for i, item in enumerate(value):
        if not isinstance(item, str):
            msg = f"observations[{i}] must be a string"
            raise ValidationError(msg, {"index": i, "received": type(item).__name__})
    return list(value)


def validate_context(context: Any) -> str:
    """Context names are alphanumeric plus ``-`` and ``_``. Empty means default."""
    if context is None:
        return DEFAULT_CONTEXT
    if not isinstance(context, str) or not _CONTEXT_RE.fullmatch(context):
        msg = "Context name must be alphanumeric (hyphens and underscores allowed)"
        raise ValidationError(msg, {"received": context})
    return context or DEFAULT_CONTEXT


def validate_safe_path(file_path: str | Path, base_path: str | Path) -> Path:
    """Resolve file_path under base_path, rejecting traversal outside it."""
    base = Path(base_path).resolve()
    resolved = (base / file_path).resolve()
    if resolved != base and base not in resolved.parents:
        msg = "Path traversal detected: path escapes allowed directory"
        raise ValidationError(msg, {"path": str(file_path), "base": str(base_path)})
    return resolved
