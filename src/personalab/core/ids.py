"""Identifier and clock helpers."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone

__all__ = ["generate_id", "utcnow", "parse_timestamp"]


def generate_id() -> str:
    """Return an opaque ``<ms-timestamp>-<random>`` identifier."""

    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: datetime | str | None) -> datetime:
    """Coerce an ISO string (or ``None``) into an aware datetime."""

    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
