"""Command line entry point for the PersonaLab service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO, get_type_hints

from aiohttp import web

from .server.context import build_context, changelog_path
from .server.http_api import create_app
from .services.changelog import JsonChangelog
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(settings: Settings, *, debug: bool = False) -> Path:
    """Log next to the service data; debug mode also turns on access logs."""

    verbose = debug or settings.debug_logging
    level = logging.DEBUG if verbose else logging.INFO
    log_path = logging_utils.setup_logging(
        level,
        log_dir=logging_utils.resolve_log_dir(settings.data_dir),
        access_log=verbose,
    )
    _LOGGER.debug("Logging to %s (level=%s)", log_path, logging.getLevelName(level))
    return log_path


def load_settings(
    path: Path | None = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `personalab` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        raise SystemExit(2)

    settings_path = args.settings_path or os.environ.get("PERSONALAB_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    overrides.update(_command_overrides(args))
    settings = load_settings(resolved_path, store=store, overrides=overrides or None)

    configure_logging(settings, debug=_env_flag("PERSONALAB_DEBUG"))

    if args.command == "serve":
        _serve(settings)
    elif args.command == "settings":
        _dump_settings(settings, store, overrides=overrides)
    elif args.command == "changelog":
        _truncate_changelog(settings, args.keep)


def _serve(settings: Settings) -> None:
    if not settings.api_key:
        _LOGGER.warning("No API key configured; agent chats and test runs will fail")
    ctx = build_context(settings)
    app = create_app(ctx)
    _LOGGER.info(
        "Serving on http://%s:%s (data dir %s, write policy %s)",
        settings.host,
        settings.port,
        settings.data_dir,
        settings.write_policy,
    )
    web.run_app(app, host=settings.host, port=settings.port, print=None)


def _truncate_changelog(settings: Settings, keep: int | None) -> None:
    retained = settings.changelog_keep if keep is None else keep
    changelog = JsonChangelog(changelog_path(settings))
    try:
        dropped = asyncio.run(changelog.truncate(retained))
    except ValueError as exc:
        print(f"Invalid --keep value: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    print(f"Dropped {dropped} changelog entr{'y' if dropped == 1 else 'ies'}; kept at most {retained}.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="personalab",
        description="Run the PersonaLab persona editing service or maintain its data.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.personalab/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    commands = parser.add_subparsers(dest="command")

    serve = commands.add_parser("serve", help="Start the HTTP service.")
    serve.add_argument("--host", help="Interface to bind.")
    serve.add_argument("--port", type=int, help="Port to bind.")
    serve.add_argument("--data-dir", metavar="PATH", help="Directory holding personas, sessions and results.")
    serve.add_argument("--debug", action="store_true", help="Enable debug logging.")

    commands.add_parser("settings", help="Print the effective settings (secrets redacted) and exit.")

    changelog = commands.add_parser("changelog", help="Maintain the change log.")
    changelog_commands = changelog.add_subparsers(dest="changelog_command", required=True)
    truncate = changelog_commands.add_parser("truncate", help="Keep only the most recent entries.")
    truncate.add_argument("--keep", type=int, metavar="N", help="Entries to retain (default: changelog_keep).")
    truncate.add_argument("--data-dir", metavar="PATH", help="Directory holding the change log.")
    return parser


def _command_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for attr, key in (("host", "host"), ("port", "port"), ("data_dir", "data_dir")):
        value = getattr(args, attr, None)
        if value is not None:
            overrides[key] = value
    if getattr(args, "debug", False):
        overrides["debug_logging"] = True
    return overrides


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, str), raw_value.strip())
    return overrides


def _coerce_value(target: Any, raw_value: str) -> Any:
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    return raw_value


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("PERSONALAB_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    main()
