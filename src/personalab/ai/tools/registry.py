"""Tool registry for the agent's tool dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from .types import SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "ToolRegistry",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Name-indexed collection of tools, kept in registration order.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            spec=ToolSpec(name="echo", description="Echo input"),
            handler=echo_handler,
        )
        schemas = registry.schemas()
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> Tool:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If the name is taken.
        """
        name = tool.name
        if name in self._tools:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        LOGGER.debug("Registered tool: %s", name)
        return tool

    def register_function(self, spec: ToolSpec, handler: ToolHandler) -> Tool:
        """Register a handler function as a tool."""
        return self.register(SimpleTool(spec=spec, handler=handler))

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_required(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError: If no tool has that name.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> list[str]:
        return list(self._tools)

    def schemas(self, *, filter_names: Sequence[str] | None = None) -> list[dict[str, Any]]:
        """Tool definitions in ``{name, description, input_schema}`` form."""
        return [
            tool.spec.to_schema()
            for name, tool in self._tools.items()
            if filter_names is None or name in filter_names
        ]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
