"""Agent chat session record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from ...core.ids import generate_id, parse_timestamp, utcnow
from .turns import TurnLog

__all__ = ["AgentSession"]


@dataclass(slots=True)
class AgentSession:
    """The current agent conversation for one persona.

    ``last_seen_changelog_id`` marks how far the agent has read the
    changelog; ``None`` means it has seen nothing yet.
    """

    id: str
    persona_id: str
    turns: TurnLog = field(default_factory=TurnLog)
    last_seen_changelog_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, persona_id: str) -> "AgentSession":
        return cls(id=generate_id(), persona_id=persona_id)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "personaId": self.persona_id,
            "turns": self.turns.to_list(),
            "lastSeenChangelogId": self.last_seen_changelog_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AgentSession":
        return cls(
            id=str(payload["id"]),
            persona_id=str(payload["personaId"]),
            turns=TurnLog.from_list(payload.get("turns")),
            last_seen_changelog_id=payload.get("lastSeenChangelogId"),
            created_at=parse_timestamp(payload.get("createdAt")),
            updated_at=parse_timestamp(payload.get("updatedAt")),
        )
