"""Shared helpers for hashing, timestamps and cache-busting tokens."""

from __future__ import annotations

import hashlib
import secrets
import string
import time
from datetime import datetime, timezone

_BASE36 = string.digits + string.ascii_lowercase


def sha256_text(text: str) -> str:
    """Return the hex SHA-256 digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def utcnow_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Return the wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def random_token(length: int = 13) -> str:
    """Return a random lowercase base-36 token."""
    return "".join(secrets.choice(_BASE36) for _ in range(length))
