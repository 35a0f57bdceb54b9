"""Debug event logging utilities for agent chat runs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ...utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return Path.home() / ".personalab" / "logs" / "events"


@dataclass(slots=True)
class _NullChatEventLogRun:
    """No-op implementation used when event logging is disabled."""

    path: Path | None = None

    def __enter__(self) -> "_NullChatEventLogRun":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def log_assistant_round(self, *_: Any, **__: Any) -> None:
        return

    def log_tool_batch(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class ChatEventLogRun:
    """Writes structured JSONL entries for one agent invocation."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry("start", context)

    def __enter__(self) -> "ChatEventLogRun":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None and not self._finalized:
            self.log_failure(message=str(exc) or type(exc).__name__)
        elif not self._finalized:
            self.log_failure(message="run ended without completion")
        return False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def close(self) -> None:
        try:
            self._file.close()
        except OSError:  # pragma: no cover - close on a broken file handle
            LOGGER.debug("Failed to close chat event log %s", self.path, exc_info=True)

    def log_assistant_round(
        self,
        *,
        round_index: int,
        stop_reason: str | None,
        response_text: str,
        tool_calls: Sequence[Mapping[str, Any]] | None,
    ) -> None:
        payload = {
            "round_index": round_index,
            "stop_reason": stop_reason,
            "response_text": response_text,
            "tool_calls": list(tool_calls or []),
        }
        self._write_entry("assistant", payload)

    def log_tool_batch(self, *, round_index: int, records: Sequence[Mapping[str, Any]]) -> None:
        if not records:
            return
        self._write_entry("tools", {"round_index": round_index, "tool_records": list(records)})

    def log_completion(self, *, rounds: int, tool_call_count: int) -> None:
        if self._finalized:
            return
        payload = {"rounds": rounds, "tool_call_count": tool_call_count, "status": "success"}
        self._write_entry("completion", payload)
        self._finalized = True
        self.close()

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        if self._finalized:
            return
        payload: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            payload["details"] = dict(details)
        self._write_entry("failure", payload)
        self._finalized = True
        self.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {"event": event, "timestamp": time.time()}
        if payload:
            for key, value in payload.items():
                entry[key] = self._safe_json(value)
        json.dump(entry, self._file, ensure_ascii=False)
        self._file.write("\n")
        self._file.flush()

    def _safe_json(self, value: Any, *, depth: int = 0) -> Any:
        if depth > 6:
            return repr(value)
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, Mapping):
            return {str(key): self._safe_json(val, depth=depth + 1) for key, val in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._safe_json(item, depth=depth + 1) for item in value]
        return repr(value)


class ChatEventLogger:
    """Factory for per-invocation event logs when debug event logging is enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    def start_run(
        self,
        *,
        run_id: str,
        persona_id: str,
        message: str,
        history_length: int,
        unseen_changes: int,
    ) -> ChatEventLogRun | _NullChatEventLogRun:
        if not self.enabled:
            return _NullChatEventLogRun()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(run_id)
            context = {
                "run_id": run_id,
                "persona_id": persona_id,
                "message": message,
                "history_length": history_length,
                "unseen_changes": unseen_changes,
            }
            log_run = ChatEventLogRun(path, context=context)
        except OSError:
            LOGGER.debug("Failed to start chat event log", exc_info=True)
            return _NullChatEventLogRun()
        LOGGER.debug("Agent event log started: %s", log_run.path)
        return log_run

    def _allocate_path(self, run_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_run_id = "".join(ch for ch in run_id if ch.isalnum())[:16] or "run"
        return self._base_dir / f"agent-{timestamp}-{safe_run_id}.jsonl"


__all__ = [
    "ChatEventLogger",
    "ChatEventLogRun",
]
