"""Tool dispatcher: run a named tool and always hand back a textual outcome.

Nothing raised by a tool escapes :meth:`ToolDispatcher.execute`; failures
become error outcomes so the agent loop can feed them back to the model as
ordinary tool results.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from ...core.models import ChangeSource
from .errors import ToolError
from .registry import ToolRegistry
from .types import ToolContext, ToolOutcome

__all__ = ["ToolDispatcher", "DispatcherConfig"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DispatcherConfig:
    """Configuration for the tool dispatcher.

    Attributes:
        default_timeout: Per-call timeout in seconds; ``None`` disables it.
        log_arguments: Whether to log tool arguments (may contain user content).
    """

    default_timeout: float | None = 120.0
    log_arguments: bool = False


class ToolDispatcher:
    """Execute tools from a :class:`ToolRegistry` against one subject."""

    def __init__(self, registry: ToolRegistry, config: DispatcherConfig | None = None) -> None:
        self._registry = registry
        self._config = config or DispatcherConfig()
        self._validators: dict[str, Draft202012Validator] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def schemas(self) -> list[dict[str, Any]]:
        return self._registry.schemas()

    async def execute(
        self,
        tool_name: str,
        tool_input: Mapping[str, Any],
        subject_id: str,
        *,
        source: ChangeSource = ChangeSource.AGENT,
    ) -> ToolOutcome:
        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s for %s with arguments: %s", tool_name, subject_id, tool_input)
        else:
            LOGGER.debug("Executing tool %s for %s", tool_name, subject_id)

        tool = self._registry.get(tool_name)
        if tool is None:
            LOGGER.warning("Model requested unknown tool %s", tool_name)
            return ToolOutcome.error(f"Unknown tool: {tool_name}")

        arguments = dict(tool_input or {})
        problem = self._validate(tool_name, tool.spec.input_schema(), arguments)
        if problem is not None:
            return ToolOutcome.error(f"Invalid input for {tool_name}: {problem}")

        context = ToolContext(subject_id=subject_id, source=source)
        timeout = self._config.default_timeout
        start_time = time.perf_counter()
        try:
            if timeout is not None and timeout > 0:
                result = await asyncio.wait_for(tool.execute(arguments, context), timeout=timeout)
            else:
                result = await tool.execute(arguments, context)
        except ToolError as exc:
            LOGGER.debug("Tool %s reported %s: %s", tool_name, exc.error_code, exc.message)
            return ToolOutcome.error(exc.message)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", tool_name, timeout)
            return ToolOutcome.error(f"Error executing tool: {tool_name} timed out after {timeout}s")
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", tool_name, exc, exc_info=True)
            return ToolOutcome.error(f"Error executing tool: {exc}")

        duration_ms = (time.perf_counter() - start_time) * 1000
        # mutations are worth an audit line; reads are not
        level = logging.INFO if tool.spec.is_write else logging.DEBUG
        LOGGER.log(level, "Tool %s completed for %s in %.1fms", tool_name, subject_id, duration_ms)
        if isinstance(result, ToolOutcome):
            return result
        if isinstance(result, str):
            return ToolOutcome(output=result)
        return ToolOutcome(output=json.dumps(result, indent=2, ensure_ascii=False, default=str))

    def _validate(self, tool_name: str, schema: Mapping[str, Any], arguments: Mapping[str, Any]) -> str | None:
        validator = self._validators.get(tool_name)
        if validator is None:
            validator = Draft202012Validator(dict(schema))
            self._validators[tool_name] = validator
        error = best_match(validator.iter_errors(arguments))
        if error is None:
            return None
        location = "/".join(str(part) for part in error.absolute_path)
        return f"{location}: {error.message}" if location else error.message
