"""Conversation records: turns, the turn log, sessions and message projection."""

from .projector import project
from .session import AgentSession
from .turns import (
    AssistantTextTurn,
    ToolCallTurn,
    ToolResultTurn,
    Turn,
    TurnLog,
    TurnLogError,
    UserTurn,
    turn_from_dict,
)

__all__ = [
    "AgentSession",
    "AssistantTextTurn",
    "ToolCallTurn",
    "ToolResultTurn",
    "Turn",
    "TurnLog",
    "TurnLogError",
    "UserTurn",
    "project",
    "turn_from_dict",
]
