"""Agent tools: specs, registry, dispatcher and the persona tool set."""

from .dispatcher import DispatcherConfig, ToolDispatcher
from .errors import (
    AlreadyLinkedError,
    ErrorCode,
    InvalidParameterError,
    NotLinkedError,
    PersonaNotFoundError,
    StaleWriteError,
    TestInputNotFoundError,
    ToolError,
)
from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistry
from .types import SimpleTool, Tool, ToolContext, ToolOutcome, ToolSpec

__all__ = [
    "AlreadyLinkedError",
    "DispatcherConfig",
    "DuplicateToolError",
    "ErrorCode",
    "InvalidParameterError",
    "NotLinkedError",
    "PersonaNotFoundError",
    "SimpleTool",
    "StaleWriteError",
    "TestInputNotFoundError",
    "Tool",
    "ToolContext",
    "ToolDispatcher",
    "ToolError",
    "ToolNotFoundError",
    "ToolOutcome",
    "ToolRegistry",
    "ToolSpec",
]
