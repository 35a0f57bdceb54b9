"""Domain records: personas, test inputs, test results and changelog entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from .ids import generate_id, parse_timestamp, utcnow

__all__ = [
    "ChangeSource",
    "ChangelogAction",
    "ChangelogEntry",
    "Persona",
    "TestInput",
    "TestResult",
    "TestResultStatus",
]


class ChangeSource(str, Enum):
    """Actor responsible for a mutation."""

    UI = "ui"
    AGENT = "agent"


class ChangelogAction(str, Enum):
    """Kinds of mutation recorded in the changelog."""

    CONFIG_UPDATED = "config_updated"
    TEST_CASE_CREATED = "test_case_created"
    TEST_CASE_UPDATED = "test_case_updated"
    TEST_CASE_DELETED = "test_case_deleted"
    TEST_CASE_LINKED = "test_case_linked"
    TEST_CASE_UNLINKED = "test_case_unlinked"
    TEST_RUN_STARTED = "test_run_started"
    TEST_RUN_COMPLETED = "test_run_completed"


class TestResultStatus(str, Enum):
    __test__ = False

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class Persona:
    """Configurable persona edited by humans and the agent.

    ``version`` is bumped by the storage layer on every persisted write and is
    what the stale-write policy compares against.
    """

    id: str
    name: str
    instructions: str = ""
    test_input_ids: list[str] = field(default_factory=list)
    agent_session_id: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, name: str, instructions: str = "") -> "Persona":
        return cls(id=generate_id(), name=name, instructions=instructions)

    def is_linked(self, test_input_id: str) -> bool:
        return test_input_id in self.test_input_ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "instructions": self.instructions,
            "testInputIds": list(self.test_input_ids),
            "agentSessionId": self.agent_session_id,
            "version": self.version,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Persona":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            instructions=str(payload.get("instructions", "")),
            test_input_ids=[str(item) for item in payload.get("testInputIds", [])],
            agent_session_id=payload.get("agentSessionId"),
            version=int(payload.get("version", 0)),
            created_at=parse_timestamp(payload.get("createdAt")),
            updated_at=parse_timestamp(payload.get("updatedAt")),
        )


@dataclass(slots=True)
class TestInput:
    """Prompt used to exercise a persona; shared between personas by id."""

    __test__ = False

    id: str
    content: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, content: str) -> "TestInput":
        return cls(id=generate_id(), content=content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TestInput":
        return cls(
            id=str(payload["id"]),
            content=str(payload.get("content", "")),
            created_at=parse_timestamp(payload.get("createdAt")),
            updated_at=parse_timestamp(payload.get("updatedAt")),
        )


@dataclass(slots=True)
class TestResult:
    """Outcome of running one persona against one test input."""

    __test__ = False

    id: str
    persona_id: str
    test_input_id: str
    persona_version: int = 0
    status: TestResultStatus = TestResultStatus.PENDING
    output: str = ""
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "personaId": self.persona_id,
            "testInputId": self.test_input_id,
            "personaVersion": self.persona_version,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TestResult":
        started = payload.get("startedAt")
        completed = payload.get("completedAt")
        return cls(
            id=str(payload["id"]),
            persona_id=str(payload["personaId"]),
            test_input_id=str(payload["testInputId"]),
            persona_version=int(payload.get("personaVersion", 0)),
            status=TestResultStatus(payload.get("status", TestResultStatus.PENDING.value)),
            output=str(payload.get("output", "")),
            error=payload.get("error"),
            started_at=parse_timestamp(started) if started else None,
            completed_at=parse_timestamp(completed) if completed else None,
        )


@dataclass(slots=True, frozen=True)
class ChangelogEntry:
    """Durable record of one mutation.

    ``id`` is opaque: callers may only ask whether one entry comes after
    another by its position in the changelog.
    """

    id: str
    timestamp: datetime
    source: ChangeSource
    action: ChangelogAction
    summary: str
    details: dict[str, Any] | None = None

    @classmethod
    def create(
        cls,
        source: ChangeSource | str,
        action: ChangelogAction | str,
        summary: str,
        details: Mapping[str, Any] | None = None,
    ) -> "ChangelogEntry":
        return cls(
            id=generate_id(),
            timestamp=utcnow(),
            source=ChangeSource(source),
            action=ChangelogAction(action),
            summary=summary,
            details=dict(details) if details else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "action": self.action.value,
            "summary": self.summary,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChangelogEntry":
        details = payload.get("details")
        return cls(
            id=str(payload["id"]),
            timestamp=parse_timestamp(payload.get("timestamp")),
            source=ChangeSource(payload["source"]),
            action=ChangelogAction(payload["action"]),
            summary=str(payload.get("summary", "")),
            details=dict(details) if isinstance(details, Mapping) else None,
        )
