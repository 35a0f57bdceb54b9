"""Tool system types for the agent's tool dispatcher."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

from ...core.models import ChangeSource

__all__ = [
    "ToolSpec",
    "ToolContext",
    "ToolOutcome",
    "ToolHandler",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool's input object.
        is_write: Whether the tool mutates persisted state; the dispatcher
            logs completed writes at INFO.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    is_write: bool = False

    def input_schema(self) -> dict[str, Any]:
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}, "required": []}

    def to_schema(self) -> dict[str, Any]:
        """Convert to the provider-neutral ``{name, description, input_schema}`` form."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema(),
        }


# -----------------------------------------------------------------------------
# Execution context and outcome
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolContext:
    """Per-call context: which subject the tool acts on and who is acting."""

    subject_id: str
    source: ChangeSource = ChangeSource.AGENT


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Textual tool result fed back to the model."""

    output: str
    is_error: bool = False

    @classmethod
    def error(cls, message: str) -> "ToolOutcome":
        return cls(output=message, is_error=True)


# Async tool handler: receives validated arguments and the call context
ToolHandler = Callable[[Mapping[str, Any], ToolContext], Awaitable[Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any], context: ToolContext) -> Any:
        """Execute the tool; raise :class:`~personalab.ai.tools.errors.ToolError` on
        expected failures."""
        ...


@dataclass
class SimpleTool:
    """Tool implementation wrapping a handler callable."""

    spec: ToolSpec
    handler: ToolHandler | Callable[[Mapping[str, Any], ToolContext], Any]
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], context: ToolContext) -> Any:
        if self._is_async:
            return await self.handler(arguments, context)  # type: ignore[misc]
        return self.handler(arguments, context)
