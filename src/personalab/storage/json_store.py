"""JSON file storage: one document per record under a data directory."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

from ..ai.conversation.session import AgentSession
from ..core.ids import utcnow
from ..core.models import Persona, TestInput, TestResult
from ..utils.file_io import read_json, write_json

__all__ = ["JsonStorage"]

LOGGER = logging.getLogger(__name__)
_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")

T = TypeVar("T")


class JsonStorage:
    """File-per-record storage.

    Layout::

        <root>/personas/<id>.json
        <root>/test-inputs/<id>.json
        <root>/sessions/<id>.json
        <root>/results/<id>.json

    Blocking file access runs in worker threads via :func:`asyncio.to_thread`.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------
    async def get_persona(self, persona_id: str) -> Persona | None:
        return await self._load("personas", persona_id, Persona.from_dict)

    async def list_personas(self) -> Sequence[Persona]:
        return await self._load_all("personas", Persona.from_dict)

    async def save_persona(self, persona: Persona) -> Persona:
        persona.version += 1
        persona.updated_at = utcnow()
        await self._store("personas", persona.id, persona.to_dict())
        return persona

    async def delete_persona(self, persona_id: str) -> bool:
        return await self._remove("personas", persona_id)

    # ------------------------------------------------------------------
    # Test inputs
    # ------------------------------------------------------------------
    async def get_test_input(self, test_input_id: str) -> TestInput | None:
        return await self._load("test-inputs", test_input_id, TestInput.from_dict)

    async def list_test_inputs(self) -> Sequence[TestInput]:
        return await self._load_all("test-inputs", TestInput.from_dict)

    async def save_test_input(self, test_input: TestInput) -> TestInput:
        await self._store("test-inputs", test_input.id, test_input.to_dict())
        return test_input

    async def delete_test_input(self, test_input_id: str) -> bool:
        return await self._remove("test-inputs", test_input_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def get_session(self, session_id: str) -> AgentSession | None:
        return await self._load("sessions", session_id, AgentSession.from_dict)

    async def save_session(self, session: AgentSession) -> AgentSession:
        await self._store("sessions", session.id, session.to_dict())
        return session

    async def delete_session(self, session_id: str) -> bool:
        return await self._remove("sessions", session_id)

    # ------------------------------------------------------------------
    # Test results
    # ------------------------------------------------------------------
    async def get_result(self, result_id: str) -> TestResult | None:
        return await self._load("results", result_id, TestResult.from_dict)

    async def save_result(self, result: TestResult) -> TestResult:
        await self._store("results", result.id, result.to_dict())
        return result

    async def list_results(
        self, *, persona_id: str | None = None, test_input_id: str | None = None
    ) -> Sequence[TestResult]:
        results = await self._load_all("results", TestResult.from_dict)
        return [
            item
            for item in results
            if (persona_id is None or item.persona_id == persona_id)
            and (test_input_id is None or item.test_input_id == test_input_id)
        ]

    async def delete_results_for_input(self, test_input_id: str) -> int:
        doomed = await self.list_results(test_input_id=test_input_id)
        for result in doomed:
            await self._remove("results", result.id)
        return len(doomed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _path(self, kind: str, record_id: str) -> Path | None:
        # ids that could escape the data directory name no record
        if not _SAFE_ID.match(record_id):
            return None
        return self._root / kind / f"{record_id}.json"

    async def _load(self, kind: str, record_id: str, factory: Callable[[Any], T]) -> T | None:
        path = self._path(kind, record_id)
        if path is None:
            LOGGER.debug("Lookup of unsafe %s id %r treated as missing", kind, record_id)
            return None
        payload = await asyncio.to_thread(read_json, path)
        return factory(payload) if payload is not None else None

    async def _load_all(self, kind: str, factory: Callable[[Any], T]) -> list[T]:
        return await asyncio.to_thread(self._read_directory, kind, factory)

    def _read_directory(self, kind: str, factory: Callable[[Any], T]) -> list[T]:
        directory = self._root / kind
        if not directory.is_dir():
            return []
        records: list[T] = []
        # ids start with a millisecond timestamp, so name order is creation order
        for path in sorted(directory.glob("*.json")):
            try:
                payload = read_json(path)
            except json.JSONDecodeError as exc:
                LOGGER.warning("Skipping unreadable record %s: %s", path, exc)
                continue
            if payload is not None:
                records.append(factory(payload))
        return records

    async def _store(self, kind: str, record_id: str, payload: dict[str, Any]) -> None:
        path = self._path(kind, record_id)
        if path is None:
            raise ValueError(f"Invalid record id: {record_id!r}")
        await asyncio.to_thread(write_json, path, payload)

    async def _remove(self, kind: str, record_id: str) -> bool:
        path = self._path(kind, record_id)
        if path is None:
            return False

        def _unlink() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        return await asyncio.to_thread(_unlink)
