"""Atomic JSON file helpers used by the storage and changelog layers."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

__all__ = ["write_json", "read_json", "json_default"]


def write_json(path: Path | str, payload: Any, *, indent: int | None = 2) -> Path:
    """Serialize ``payload`` to ``path`` using a temp file + ``os.replace``.

    Readers never observe a partially written file: they see either the
    previous body or the new one.
    """

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    body = json.dumps(payload, indent=indent, ensure_ascii=False, default=json_default)

    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding="utf-8", newline="") as handle:
            handle.write(body)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return target


def read_json(path: Path | str, default: Any = None) -> Any:
    """Return the decoded JSON body of ``path`` or ``default`` when it is missing."""

    target = Path(path)
    try:
        text = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    return json.loads(text)


def json_default(value: Any) -> Any:
    """``json.dumps`` fallback that renders datetimes and paths as strings."""

    isoformat = getattr(value, "isoformat", None)
    if callable(isoformat):
        return isoformat()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
