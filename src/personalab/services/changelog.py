"""Durable, truncatable ledger of mutations.

The agent reads entries it has not seen yet before each invocation so it
learns about edits it did not make itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..core.models import ChangeSource, ChangelogAction, ChangelogEntry
from ..utils.file_io import read_json, write_json
from .broadcaster import ChangeBroadcaster
from .state_events import ChangelogEntryAddedEvent

__all__ = [
    "Changelog",
    "InMemoryChangelog",
    "JsonChangelog",
    "ChangeRecorder",
    "entries_after",
]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class Changelog(Protocol):
    """Append-only ledger addressed by opaque entry ids."""

    async def append(self, entry: ChangelogEntry) -> ChangelogEntry:
        ...

    async def entries(self, since_id: str | None = None) -> list[ChangelogEntry]:
        """Entries strictly after ``since_id``; all retained entries when it is
        ``None`` or no longer retained."""
        ...

    async def latest_id(self) -> str | None:
        ...

    async def truncate(self, keep: int) -> int:
        """Retain only the newest ``keep`` entries and return how many were dropped."""
        ...


def entries_after(entries: Sequence[ChangelogEntry], since_id: str | None) -> list[ChangelogEntry]:
    """Slice ``entries`` after ``since_id``.

    An unknown marker (e.g. one discarded by truncation) replays everything
    still retained so the caller can always resynchronize.
    """

    if since_id is None:
        return list(entries)
    for index, entry in enumerate(entries):
        if entry.id == since_id:
            return list(entries[index + 1 :])
    return list(entries)


def _check_keep(keep: int) -> None:
    if keep < 0:
        raise ValueError(f"keep must be >= 0, got {keep}")


class InMemoryChangelog:
    """Process-local changelog."""

    def __init__(self, entries: Sequence[ChangelogEntry] = ()) -> None:
        self._entries: tuple[ChangelogEntry, ...] = tuple(entries)
        self._lock = asyncio.Lock()

    async def append(self, entry: ChangelogEntry) -> ChangelogEntry:
        async with self._lock:
            self._entries = (*self._entries, entry)
        return entry

    async def entries(self, since_id: str | None = None) -> list[ChangelogEntry]:
        return entries_after(self._entries, since_id)

    async def latest_id(self) -> str | None:
        return self._entries[-1].id if self._entries else None

    async def truncate(self, keep: int) -> int:
        _check_keep(keep)
        async with self._lock:
            dropped = len(self._entries) - keep
            if dropped <= 0:
                return 0
            self._entries = self._entries[-keep:] if keep else ()
        return dropped

    def __len__(self) -> int:
        return len(self._entries)


class JsonChangelog:
    """Changelog persisted to a single JSON file.

    Mutations are serialized by a lock and written with an atomic replace;
    the in-memory snapshot is swapped only after the file write succeeds, so
    readers always see the last fully persisted state.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()
        self._entries: tuple[ChangelogEntry, ...] | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, entry: ChangelogEntry) -> ChangelogEntry:
        async with self._lock:
            current = await self._load_locked()
            updated = (*current, entry)
            await self._write(updated)
            self._entries = updated
        return entry

    async def entries(self, since_id: str | None = None) -> list[ChangelogEntry]:
        return entries_after(await self._snapshot(), since_id)

    async def latest_id(self) -> str | None:
        snapshot = await self._snapshot()
        return snapshot[-1].id if snapshot else None

    async def truncate(self, keep: int) -> int:
        _check_keep(keep)
        async with self._lock:
            current = await self._load_locked()
            dropped = len(current) - keep
            if dropped <= 0:
                return 0
            kept = current[-keep:] if keep else ()
            await self._write(kept)
            self._entries = kept
        LOGGER.info("Truncated changelog %s: dropped %d, kept %d", self._path, dropped, keep)
        return dropped

    async def _snapshot(self) -> tuple[ChangelogEntry, ...]:
        if self._entries is not None:
            return self._entries
        async with self._lock:
            return await self._load_locked()

    async def _load_locked(self) -> tuple[ChangelogEntry, ...]:
        if self._entries is None:
            self._entries = await asyncio.to_thread(self._read)
        return self._entries

    def _read(self) -> tuple[ChangelogEntry, ...]:
        try:
            payload = read_json(self._path, default={})
        except json.JSONDecodeError as exc:
            LOGGER.warning("Changelog file %s is not valid JSON: %s", self._path, exc)
            return ()
        raw_entries = payload.get("entries", []) if isinstance(payload, Mapping) else []
        return tuple(ChangelogEntry.from_dict(item) for item in raw_entries)

    async def _write(self, entries: Sequence[ChangelogEntry]) -> None:
        payload = {"entries": [entry.to_dict() for entry in entries]}
        await asyncio.to_thread(write_json, self._path, payload)


class ChangeRecorder:
    """Append a changelog entry and announce it to live observers."""

    def __init__(self, changelog: Changelog, broadcaster: ChangeBroadcaster) -> None:
        self._changelog = changelog
        self._broadcaster = broadcaster

    @property
    def changelog(self) -> Changelog:
        return self._changelog

    async def record(
        self,
        source: ChangeSource | str,
        action: ChangelogAction | str,
        summary: str,
        details: Mapping[str, Any] | None = None,
    ) -> ChangelogEntry:
        entry = ChangelogEntry.create(source, action, summary, details)
        await self._changelog.append(entry)
        self._broadcaster.emit(ChangelogEntryAddedEvent(entry=entry))
        LOGGER.debug("Recorded %s from %s: %s", entry.action.value, entry.source.value, summary)
        return entry
