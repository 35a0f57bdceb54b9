"""Ephemeral state events pushed to live observers.

These are never persisted or replayed; the changelog is the durable record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Sequence

from ..core.models import ChangelogEntry, Persona, TestInput, TestResult

__all__ = [
    "StateEvent",
    "ConnectedEvent",
    "ConfigUpdatedEvent",
    "TestCaseAddedEvent",
    "TestCaseUpdatedEvent",
    "TestCaseDeletedEvent",
    "TestResultUpdatedEvent",
    "ChangelogEntryAddedEvent",
    "InitialStateEvent",
]


@dataclass(slots=True)
class StateEvent:
    """Base class for events delivered through the change broadcaster."""

    type: ClassVar[str] = "state"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(slots=True)
class ConnectedEvent(StateEvent):
    """Synthetic event delivered once to each new subscriber."""

    client_id: str

    type: ClassVar[str] = "connected"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "clientId": self.client_id}


@dataclass(slots=True)
class ConfigUpdatedEvent(StateEvent):
    persona: Persona

    type: ClassVar[str] = "config_updated"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "persona": self.persona.to_dict()}


@dataclass(slots=True)
class TestCaseAddedEvent(StateEvent):
    __test__ = False

    test_case: TestInput
    persona_id: str | None = None

    type: ClassVar[str] = "test_case_added"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "testCase": self.test_case.to_dict()}
        if self.persona_id is not None:
            payload["personaId"] = self.persona_id
        return payload


@dataclass(slots=True)
class TestCaseUpdatedEvent(StateEvent):
    __test__ = False

    test_case: TestInput

    type: ClassVar[str] = "test_case_updated"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "testCase": self.test_case.to_dict()}


@dataclass(slots=True)
class TestCaseDeletedEvent(StateEvent):
    __test__ = False

    test_case_id: str

    type: ClassVar[str] = "test_case_deleted"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "testCaseId": self.test_case_id}


@dataclass(slots=True)
class TestResultUpdatedEvent(StateEvent):
    __test__ = False

    result: TestResult

    type: ClassVar[str] = "test_result_updated"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "result": self.result.to_dict()}


@dataclass(slots=True)
class ChangelogEntryAddedEvent(StateEvent):
    entry: ChangelogEntry

    type: ClassVar[str] = "changelog_entry_added"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "entry": self.entry.to_dict()}


@dataclass(slots=True)
class InitialStateEvent(StateEvent):
    """Snapshot written directly to a new state-stream connection."""

    personas: Sequence[Persona] = field(default_factory=list)
    test_inputs: Sequence[TestInput] = field(default_factory=list)
    results: Sequence[TestResult] = field(default_factory=list)

    type: ClassVar[str] = "initial_state"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "personas": [item.to_dict() for item in self.personas],
            "testInputs": [item.to_dict() for item in self.test_inputs],
            "results": [item.to_dict() for item in self.results],
        }
