"""Logging helpers that keep identifiers recognisable without leaking them."""

from __future__ import annotations

import hashlib


def mask(value: str | None, keep: int = 6) -> str:
    """Return the first *keep* characters of *value* followed by ``****``."""
    if not value:
        return "<none>"
    return f"{value[:keep]}****"


def fingerprint(value: str, length: int = 12) -> str:
    """Return a short, stable SHA-256 fingerprint suitable for log lines and cache keys."""
    return hashlib.sha256(value.encode()).hexdigest()[:length]
