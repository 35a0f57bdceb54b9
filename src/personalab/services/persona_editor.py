"""Mutation service shared by the agent tools and the HTTP routes.

Every successful mutation is persisted, announced as a state event and
recorded in the changelog with the acting source. Broadcast and changelog are
not transactionally coupled: observers may see the event before the entry is
durable.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Mapping

from ..ai.tools.errors import (
    AlreadyLinkedError,
    InvalidParameterError,
    NotLinkedError,
    PersonaNotFoundError,
    StaleWriteError,
    TestInputNotFoundError,
)
from ..core.ids import utcnow
from ..core.models import ChangeSource, ChangelogAction, Persona, TestInput
from ..storage.base import PersonaStorage, TestInputStorage, TestResultStorage
from .broadcaster import ChangeBroadcaster
from .changelog import ChangeRecorder
from .state_events import (
    ConfigUpdatedEvent,
    TestCaseAddedEvent,
    TestCaseDeletedEvent,
    TestCaseUpdatedEvent,
)

__all__ = ["PersonaEditor", "WritePolicy", "coerce_source", "parse_expected_version"]

LOGGER = logging.getLogger(__name__)


class WritePolicy(str, Enum):
    """How concurrent writers to one persona are reconciled."""

    LAST_WRITER_WINS = "last_writer_wins"
    REJECT_STALE = "reject_stale"


def _preview(text: str, limit: int = 40) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else f"{flat[: limit - 3]}..."


class PersonaEditor:
    """Read, mutate and persist personas and test inputs.

    Under :attr:`WritePolicy.LAST_WRITER_WINS` persona writes are plain
    read-modify-persist. Under :attr:`WritePolicy.REJECT_STALE` callers may
    pass ``expected_version``; a mismatch raises :class:`StaleWriteError` and
    the read-check-persist section is serialized per persona.
    """

    def __init__(
        self,
        *,
        personas: PersonaStorage,
        test_inputs: TestInputStorage,
        results: TestResultStorage,
        broadcaster: ChangeBroadcaster,
        recorder: ChangeRecorder,
        write_policy: WritePolicy | str = WritePolicy.LAST_WRITER_WINS,
    ) -> None:
        self._personas = personas
        self._test_inputs = test_inputs
        self._results = results
        self._broadcaster = broadcaster
        self._recorder = recorder
        self._write_policy = WritePolicy(write_policy)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def write_policy(self) -> WritePolicy:
        return self._write_policy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_persona(self, persona_id: str) -> Persona:
        persona = await self._personas.get_persona(persona_id)
        if persona is None:
            raise PersonaNotFoundError(persona_id=persona_id)
        return persona

    async def list_personas(self) -> list[Persona]:
        return list(await self._personas.list_personas())

    async def get_test_input(self, test_input_id: str) -> TestInput:
        test_input = await self._test_inputs.get_test_input(test_input_id)
        if test_input is None:
            raise TestInputNotFoundError(test_input_id=test_input_id)
        return test_input

    async def list_test_inputs(self) -> list[TestInput]:
        return list(await self._test_inputs.list_test_inputs())

    async def linked_test_inputs(self, persona_id: str) -> list[TestInput]:
        """Return the persona's linked inputs in link order, skipping dangling ids."""

        persona = await self.get_persona(persona_id)
        linked: list[TestInput] = []
        for test_input_id in persona.test_input_ids:
            test_input = await self._test_inputs.get_test_input(test_input_id)
            if test_input is not None:
                linked.append(test_input)
        return linked

    # ------------------------------------------------------------------
    # Persona mutations
    # ------------------------------------------------------------------
    async def create_persona(
        self,
        name: str,
        instructions: str = "",
        *,
        source: ChangeSource | str = ChangeSource.UI,
    ) -> Persona:
        if not name.strip():
            raise InvalidParameterError(message="Persona name must not be empty")
        persona = await self._personas.save_persona(Persona.create(name, instructions))
        self._broadcaster.emit(ConfigUpdatedEvent(persona=persona))
        await self._recorder.record(
            source,
            ChangelogAction.CONFIG_UPDATED,
            f'Persona "{persona.name}" created',
            {"personaId": persona.id},
        )
        return persona

    async def update_persona(
        self,
        persona_id: str,
        *,
        name: str | None = None,
        instructions: str | None = None,
        expected_version: int | None = None,
        source: ChangeSource | str = ChangeSource.UI,
    ) -> Persona:
        if name is None and instructions is None:
            raise InvalidParameterError(message="Nothing to update")
        if name is not None and not name.strip():
            raise InvalidParameterError(message="Persona name must not be empty")

        async with self._write_guard(persona_id):
            persona = await self.get_persona(persona_id)
            self._check_version(persona, expected_version)
            changed: list[str] = []
            if name is not None and name != persona.name:
                persona.name = name
                changed.append("name")
            if instructions is not None and instructions != persona.instructions:
                persona.instructions = instructions
                changed.append("instructions")
            if not changed:
                return persona
            persona = await self._personas.save_persona(persona)

        self._broadcaster.emit(ConfigUpdatedEvent(persona=persona))
        if changed == ["name"]:
            summary = f'Persona renamed to "{persona.name}"'
        elif changed == ["instructions"]:
            summary = f'Instructions for "{persona.name}" updated'
        else:
            summary = f'Persona "{persona.name}" name and instructions updated'
        await self._recorder.record(
            source,
            ChangelogAction.CONFIG_UPDATED,
            summary,
            {"personaId": persona.id, "fields": changed, "version": persona.version},
        )
        return persona

    async def attach_session(self, persona_id: str, session_id: str) -> Persona | None:
        """Point the persona at its current agent session.

        Re-reads the persona first since tools may have changed it during the
        run. Returns ``None`` when the persona has since been removed.
        """

        async with self._write_guard(persona_id):
            persona = await self._personas.get_persona(persona_id)
            if persona is None:
                LOGGER.warning("Persona %s vanished before session %s was attached", persona_id, session_id)
                return None
            if persona.agent_session_id == session_id:
                return persona
            persona.agent_session_id = session_id
            persona = await self._personas.save_persona(persona)
        self._broadcaster.emit(ConfigUpdatedEvent(persona=persona))
        return persona

    # ------------------------------------------------------------------
    # Test input mutations
    # ------------------------------------------------------------------
    async def create_test_input(
        self,
        content: str,
        *,
        persona_id: str | None = None,
        expected_version: int | None = None,
        source: ChangeSource | str = ChangeSource.UI,
    ) -> TestInput:
        """Create a test input, linking it to ``persona_id`` when given."""

        if not content.strip():
            raise InvalidParameterError(message="Test input content must not be empty")
        persona: Persona | None = None
        if persona_id is not None:
            persona = await self.get_persona(persona_id)
            self._check_version(persona, expected_version)

        test_input = await self._test_inputs.save_test_input(TestInput.create(content))
        if persona_id is not None:
            async with self._write_guard(persona_id):
                persona = await self.get_persona(persona_id)
                persona.test_input_ids.append(test_input.id)
                persona = await self._personas.save_persona(persona)

        self._broadcaster.emit(TestCaseAddedEvent(test_case=test_input, persona_id=persona_id))
        if persona is not None:
            self._broadcaster.emit(ConfigUpdatedEvent(persona=persona))
        details: dict[str, Any] = {"testInputId": test_input.id}
        if persona_id is not None:
            details["personaId"] = persona_id
        await self._recorder.record(
            source,
            ChangelogAction.TEST_CASE_CREATED,
            f'Test input "{_preview(content)}" created',
            details,
        )
        return test_input

    async def update_test_input(
        self,
        test_input_id: str,
        content: str,
        *,
        source: ChangeSource | str = ChangeSource.UI,
    ) -> TestInput:
        if not content.strip():
            raise InvalidParameterError(message="Test input content must not be empty")
        test_input = await self.get_test_input(test_input_id)
        test_input.content = content
        test_input.updated_at = utcnow()
        test_input = await self._test_inputs.save_test_input(test_input)

        self._broadcaster.emit(TestCaseUpdatedEvent(test_case=test_input))
        await self._recorder.record(
            source,
            ChangelogAction.TEST_CASE_UPDATED,
            f'Test input "{_preview(content)}" updated',
            {"testInputId": test_input_id},
        )
        return test_input

    async def link_test_input(
        self,
        persona_id: str,
        test_input_id: str,
        *,
        expected_version: int | None = None,
        source: ChangeSource | str = ChangeSource.UI,
    ) -> Persona:
        test_input = await self.get_test_input(test_input_id)
        async with self._write_guard(persona_id):
            persona = await self.get_persona(persona_id)
            self._check_version(persona, expected_version)
            if persona.is_linked(test_input_id):
                raise AlreadyLinkedError(test_input_id=test_input_id)
            persona.test_input_ids.append(test_input_id)
            persona = await self._personas.save_persona(persona)

        self._broadcaster.emit(ConfigUpdatedEvent(persona=persona))
        await self._recorder.record(
            source,
            ChangelogAction.TEST_CASE_LINKED,
            f'Test input "{_preview(test_input.content)}" linked to "{persona.name}"',
            {"personaId": persona_id, "testInputId": test_input_id},
        )
        return persona

    async def unlink_test_input(
        self,
        persona_id: str,
        test_input_id: str,
        *,
        expected_version: int | None = None,
        source: ChangeSource | str = ChangeSource.UI,
    ) -> Persona:
        """Soft removal: drop the reference, keep the input.

        Raises :class:`NotLinkedError` without touching anything if the
        persona never referenced the input.
        """

        async with self._write_guard(persona_id):
            persona = await self.get_persona(persona_id)
            self._check_version(persona, expected_version)
            if not persona.is_linked(test_input_id):
                raise NotLinkedError(test_input_id=test_input_id)
            persona.test_input_ids = [tid for tid in persona.test_input_ids if tid != test_input_id]
            persona = await self._personas.save_persona(persona)

        self._broadcaster.emit(ConfigUpdatedEvent(persona=persona))
        await self._recorder.record(
            source,
            ChangelogAction.TEST_CASE_UNLINKED,
            f'Test input "{test_input_id}" unlinked from "{persona.name}"',
            {"personaId": persona_id, "testInputId": test_input_id},
        )
        return persona

    async def delete_test_input(
        self,
        test_input_id: str,
        *,
        source: ChangeSource | str = ChangeSource.UI,
    ) -> list[str]:
        """Hard removal: destroy the input and unlink it everywhere.

        Succeeds whether or not any persona referenced it. Returns the ids of
        personas that were unlinked.
        """

        existing = await self._test_inputs.get_test_input(test_input_id)
        unlinked: list[str] = []
        for candidate in await self._personas.list_personas():
            if not candidate.is_linked(test_input_id):
                continue
            async with self._write_guard(candidate.id):
                persona = await self._personas.get_persona(candidate.id)
                if persona is None or not persona.is_linked(test_input_id):
                    continue
                persona.test_input_ids = [
                    tid for tid in persona.test_input_ids if tid != test_input_id
                ]
                persona = await self._personas.save_persona(persona)
            unlinked.append(persona.id)
            self._broadcaster.emit(ConfigUpdatedEvent(persona=persona))

        await self._test_inputs.delete_test_input(test_input_id)
        removed_results = await self._results.delete_results_for_input(test_input_id)
        LOGGER.debug(
            "Deleted test input %s (unlinked from %d personas, %d results removed)",
            test_input_id,
            len(unlinked),
            removed_results,
        )

        self._broadcaster.emit(TestCaseDeletedEvent(test_case_id=test_input_id))
        label = _preview(existing.content) if existing is not None else test_input_id
        await self._recorder.record(
            source,
            ChangelogAction.TEST_CASE_DELETED,
            f'Test input "{label}" deleted',
            {"testInputId": test_input_id, "unlinkedFrom": unlinked},
        )
        return unlinked

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check_version(self, persona: Persona, expected_version: int | None) -> None:
        if self._write_policy is not WritePolicy.REJECT_STALE or expected_version is None:
            return
        if persona.version != expected_version:
            raise StaleWriteError(
                expected_version=expected_version, current_version=persona.version
            )

    def _write_guard(self, persona_id: str) -> "asyncio.Lock | _NoLock":
        if self._write_policy is WritePolicy.REJECT_STALE:
            return self._locks[persona_id]
        return _NO_LOCK


class _NoLock:
    """Async context manager that does nothing (last-writer-wins mode)."""

    async def __aenter__(self) -> None:
        return None

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


_NO_LOCK = _NoLock()


def coerce_source(value: str | None, default: ChangeSource = ChangeSource.UI) -> ChangeSource:
    """Map a loose source label (e.g. an ``X-Source`` header) onto :class:`ChangeSource`."""

    if value and value.strip().lower() == ChangeSource.AGENT.value:
        return ChangeSource.AGENT
    return default


def parse_expected_version(payload: Mapping[str, Any], key: str = "version") -> int | None:
    """Read an optional integer version from a request/tool payload."""

    raw = payload.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise InvalidParameterError(message=f"{key} must be an integer")
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidParameterError(message=f"{key} must be an integer") from exc
