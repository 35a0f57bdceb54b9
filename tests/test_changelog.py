"""Tests for the in-memory and JSON changelogs and the change recorder."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from personalab.core.models import ChangeSource, ChangelogAction, ChangelogEntry
from personalab.services.changelog import ChangeRecorder, InMemoryChangelog, JsonChangelog
from personalab.services.state_events import ChangelogEntryAddedEvent


def _entry(summary: str, source: ChangeSource = ChangeSource.UI) -> ChangelogEntry:
    return ChangelogEntry.create(source, ChangelogAction.CONFIG_UPDATED, summary)


@pytest.fixture(params=["memory", "json"])
def any_changelog(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryChangelog()
    return JsonChangelog(tmp_path / "changelog.json")


class TestChangelogContract:
    @pytest.mark.asyncio
    async def test_empty(self, any_changelog) -> None:
        assert await any_changelog.entries() == []
        assert await any_changelog.latest_id() is None

    @pytest.mark.asyncio
    async def test_entries_since(self, any_changelog) -> None:
        first, second, third = _entry("one"), _entry("two"), _entry("three")
        for entry in (first, second, third):
            await any_changelog.append(entry)

        assert [entry.summary for entry in await any_changelog.entries(first.id)] == ["two", "three"]
        assert await any_changelog.entries(third.id) == []
        assert await any_changelog.latest_id() == third.id

    @pytest.mark.asyncio
    async def test_unknown_since_id_replays_everything(self, any_changelog) -> None:
        await any_changelog.append(_entry("one"))
        await any_changelog.append(_entry("two"))

        replay = await any_changelog.entries("0-discarded")

        assert [entry.summary for entry in replay] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_marker_truncated_away_replays_what_is_left(self, any_changelog) -> None:
        first, second, third = _entry("e1"), _entry("e2"), _entry("e3")
        for entry in (first, second, third):
            await any_changelog.append(entry)

        assert await any_changelog.truncate(2) == 1
        replay = await any_changelog.entries(first.id)

        assert [entry.id for entry in replay] == [second.id, third.id]

    @pytest.mark.asyncio
    async def test_truncate(self, any_changelog) -> None:
        for index in range(5):
            await any_changelog.append(_entry(f"entry {index}"))

        assert await any_changelog.truncate(10) == 0
        assert await any_changelog.truncate(2) == 3
        assert [entry.summary for entry in await any_changelog.entries()] == ["entry 3", "entry 4"]
        assert await any_changelog.truncate(0) == 2
        assert await any_changelog.entries() == []

    @pytest.mark.asyncio
    async def test_negative_keep_rejected(self, any_changelog) -> None:
        with pytest.raises(ValueError):
            await any_changelog.truncate(-1)

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_all_kept(self, any_changelog) -> None:
        entries = [_entry(f"e{index}") for index in range(20)]

        await asyncio.gather(*(any_changelog.append(entry) for entry in entries))

        stored = await any_changelog.entries()
        assert {entry.id for entry in stored} == {entry.id for entry in entries}


class TestJsonChangelog:
    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "changelog.json"
        entry = ChangelogEntry.create(
            ChangeSource.AGENT, ChangelogAction.TEST_CASE_LINKED, "linked", {"testInputId": "t1"}
        )
        await JsonChangelog(path).append(entry)

        reopened = await JsonChangelog(path).entries()

        assert reopened == [entry]
        assert json.loads(path.read_text(encoding="utf-8"))["entries"][0]["source"] == "agent"

    @pytest.mark.asyncio
    async def test_invalid_file_reads_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "changelog.json"
        path.write_text("{not json", encoding="utf-8")

        assert await JsonChangelog(path).entries() == []


class TestChangeRecorder:
    @pytest.mark.asyncio
    async def test_appends_then_broadcasts(self, changelog, broadcaster, state_events) -> None:
        recorder = ChangeRecorder(changelog, broadcaster)

        entry = await recorder.record("agent", "test_case_created", "Created", {"testInputId": "t1"})

        assert await changelog.entries() == [entry]
        assert entry.source is ChangeSource.AGENT
        assert state_events == [ChangelogEntryAddedEvent(entry=entry)]
        assert "-" in entry.id
