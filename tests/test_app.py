"""Tests covering the command line entry point."""

from __future__ import annotations

import asyncio
import io
import json
from pathlib import Path

import pytest

from personalab import app
from personalab.core.models import ChangeSource, ChangelogAction, ChangelogEntry
from personalab.services.changelog import JsonChangelog
from personalab.services.settings import Settings, SettingsStore


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: None)


def _seed_changelog(path: Path, count: int) -> None:
    changelog = JsonChangelog(path)

    async def _append() -> None:
        for index in range(count):
            await changelog.append(
                ChangelogEntry.create(ChangeSource.UI, ChangelogAction.CONFIG_UPDATED, f"change {index}")
            )

    asyncio.run(_append())


def test_coerce_cli_overrides_casts_types() -> None:
    overrides = app._coerce_cli_overrides(
        [
            "base_url=https://cli",
            "debug_logging=true",
            "max_rounds=12",
            "request_timeout=42.25",
        ]
    )

    assert overrides["base_url"] == "https://cli"
    assert overrides["debug_logging"] is True
    assert overrides["max_rounds"] == 12
    assert overrides["request_timeout"] == pytest.approx(42.25)


def test_coerce_cli_overrides_rejects_unknown_field() -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides(["not_a_setting=value"])


def test_coerce_cli_overrides_rejects_bad_bool() -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides(["debug_logging=maybe"])


def test_dump_settings_redacts_api_key(tmp_path: Path) -> None:
    settings = Settings(api_key="super-secret", base_url="https://example.com")
    store = SettingsStore(tmp_path / "settings.json")
    buffer = io.StringIO()

    app._dump_settings(settings, store, overrides={"base_url": "https://cli"}, stream=buffer)

    payload = json.loads(buffer.getvalue())
    assert "super-secret" not in payload["settings"]["api_key"]
    assert payload["meta"]["secret_backend"] == store.vault.strategy
    assert payload["meta"]["cli_overrides"] == ["base_url"]


def test_settings_command_applies_overrides(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "max_rounds=9", "settings"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["max_rounds"] == 9


def test_invalid_override_exits(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "nope", "settings"])

    assert excinfo.value.code == 2


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        app.main([])

    assert "usage: personalab" in capsys.readouterr().out


def test_changelog_truncate_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed_changelog(tmp_path / "changelog.json", 3)

    app.main(
        [
            "--settings-path",
            str(tmp_path / "settings.json"),
            "changelog",
            "truncate",
            "--keep",
            "1",
            "--data-dir",
            str(tmp_path),
        ]
    )

    assert capsys.readouterr().out.strip() == "Dropped 2 changelog entries; kept at most 1."
    remaining = asyncio.run(JsonChangelog(tmp_path / "changelog.json").entries())
    assert [entry.summary for entry in remaining] == ["change 2"]


def test_changelog_truncate_rejects_negative_keep(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(
            [
                "--settings-path",
                str(tmp_path / "settings.json"),
                "changelog",
                "truncate",
                "--keep",
                "-1",
                "--data-dir",
                str(tmp_path),
            ]
        )

    assert excinfo.value.code == 2
