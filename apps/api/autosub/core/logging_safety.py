"""Utilities for safe structured logging fields."""

from __future__ import annotations

import hashlib
from typing import Any

_MAX_MESSAGE_CHARS = 200


def safe_log_identifier(value: Any, *, prefix: str) -> str:
    """Return a deterministic non-reversible token for log correlation fields."""
    text = str(value or "").strip()
    if not text:
        return f"{prefix}-missing"

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def safe_log_message(value: Any, *, limit: int = _MAX_MESSAGE_CHARS) -> str:
    """Collapse a free-form upstream message onto one clipped line."""
    text = " ".join(str(value or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
