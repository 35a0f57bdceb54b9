"""Turn records and the append-only turn log backing an agent session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Iterable, Iterator, Mapping, Sequence, Union

from ...core.ids import generate_id, parse_timestamp, utcnow

__all__ = [
    "UserTurn",
    "AssistantTextTurn",
    "ToolCallTurn",
    "ToolResultTurn",
    "Turn",
    "TurnLog",
    "TurnLogError",
    "turn_from_dict",
]


class TurnLogError(ValueError):
    """Raised when an append would break tool call/result pairing."""


# -----------------------------------------------------------------------------
# Turn variants
# -----------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class UserTurn:
    content: str
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[str] = "user"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "id": self.id,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class AssistantTextTurn:
    content: str
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[str] = "assistant_text"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "id": self.id,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class ToolCallTurn:
    """A tool invocation requested by the model."""

    tool_invocation_id: str
    tool_name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[str] = "tool_call"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "id": self.id,
            "toolUseId": self.tool_invocation_id,
            "toolName": self.tool_name,
            "input": dict(self.input),
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class ToolResultTurn:
    """Result of executing the tool call sharing ``tool_invocation_id``."""

    tool_invocation_id: str
    output: str
    is_error: bool = False
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[str] = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "id": self.id,
            "toolUseId": self.tool_invocation_id,
            "output": self.output,
            "isError": self.is_error,
            "createdAt": self.created_at.isoformat(),
        }


Turn = Union[UserTurn, AssistantTextTurn, ToolCallTurn, ToolResultTurn]


def turn_from_dict(payload: Mapping[str, Any]) -> Turn:
    """Rebuild a turn from its wire representation."""

    kind = payload.get("type")
    turn_id = str(payload.get("id") or generate_id())
    created_at = parse_timestamp(payload.get("createdAt"))
    if kind == UserTurn.kind:
        return UserTurn(content=str(payload.get("content", "")), id=turn_id, created_at=created_at)
    if kind == AssistantTextTurn.kind:
        return AssistantTextTurn(
            content=str(payload.get("content", "")), id=turn_id, created_at=created_at
        )
    if kind == ToolCallTurn.kind:
        raw_input = payload.get("input")
        return ToolCallTurn(
            tool_invocation_id=str(payload["toolUseId"]),
            tool_name=str(payload.get("toolName", "")),
            input=dict(raw_input) if isinstance(raw_input, Mapping) else {},
            id=turn_id,
            created_at=created_at,
        )
    if kind == ToolResultTurn.kind:
        return ToolResultTurn(
            tool_invocation_id=str(payload["toolUseId"]),
            output=str(payload.get("output", "")),
            is_error=bool(payload.get("isError", False)),
            id=turn_id,
            created_at=created_at,
        )
    raise TurnLogError(f"Unknown turn type: {kind!r}")


# -----------------------------------------------------------------------------
# Turn log
# -----------------------------------------------------------------------------

class TurnLog:
    """Append-only, totally ordered sequence of turns.

    Every tool result must answer exactly one earlier tool call and no two
    tool calls may share an invocation id. Ordering is append order, never
    ``created_at`` (timestamps may tie).
    """

    def __init__(self, turns: Iterable[Turn] = ()) -> None:
        self._turns: list[Turn] = []
        self._call_ids: set[str] = set()
        self._resolved_ids: set[str] = set()
        for turn in turns:
            self.append(turn)

    def append(self, turn: Turn) -> Turn:
        if isinstance(turn, ToolCallTurn):
            if turn.tool_invocation_id in self._call_ids:
                raise TurnLogError(
                    f"Duplicate tool invocation id: {turn.tool_invocation_id}"
                )
            self._call_ids.add(turn.tool_invocation_id)
        elif isinstance(turn, ToolResultTurn):
            invocation_id = turn.tool_invocation_id
            if invocation_id not in self._call_ids:
                raise TurnLogError(f"Tool result without matching call: {invocation_id}")
            if invocation_id in self._resolved_ids:
                raise TurnLogError(f"Tool call already has a result: {invocation_id}")
            self._resolved_ids.add(invocation_id)
        elif not isinstance(turn, (UserTurn, AssistantTextTurn)):
            raise TurnLogError(f"Unsupported turn: {type(turn).__name__}")
        self._turns.append(turn)
        return turn

    def extend(self, turns: Iterable[Turn]) -> None:
        for turn in turns:
            self.append(turn)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def orphaned_tool_calls(self) -> list[ToolCallTurn]:
        """Return tool calls that never received a result, in call order."""

        return [
            turn
            for turn in self._turns
            if isinstance(turn, ToolCallTurn) and turn.tool_invocation_id not in self._resolved_ids
        ]

    def to_list(self) -> list[dict[str, Any]]:
        return [turn.to_dict() for turn in self._turns]

    @classmethod
    def from_list(cls, payload: Sequence[Mapping[str, Any]] | None) -> "TurnLog":
        return cls(turn_from_dict(item) for item in payload or ())

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"TurnLog({len(self._turns)} turns)"
