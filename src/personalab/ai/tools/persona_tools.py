"""Persona editing tools exposed to the agent.

Every tool reads the persona's current persisted state, mutates it through
:class:`~personalab.services.persona_editor.PersonaEditor` and persists it;
no tool keeps state between calls.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Mapping

from .errors import NotLinkedError
from .registry import ToolRegistry
from .types import ToolContext, ToolSpec

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...services.persona_editor import PersonaEditor
    from ...services.test_runner import TestRunner

__all__ = ["PersonaToolset", "PERSONA_TOOL_SPECS", "build_persona_registry"]

LOGGER = logging.getLogger(__name__)

_EXPECTED_VERSION = {
    "type": "integer",
    "description": (
        "Optional persona version from get_persona. When stale-write protection is on, "
        "the change is rejected if the persona changed since that version."
    ),
}


def _object(properties: Mapping[str, Any] | None = None, required: tuple[str, ...] = ()) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": dict(properties or {}),
        "required": list(required),
    }


def _id_property(purpose: str) -> dict[str, Any]:
    return {"type": "string", "description": f"The ID of the test input to {purpose}"}


PERSONA_TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="get_persona",
        description="Get the current persona data including name, instructions, test input IDs and version.",
        parameters=_object(),
    ),
    ToolSpec(
        name="update_persona_name",
        description="Update the persona's display name.",
        parameters=_object(
            {
                "name": {"type": "string", "description": "The new name for the persona", "minLength": 1},
                "expectedVersion": _EXPECTED_VERSION,
            },
            ("name",),
        ),
        is_write=True,
    ),
    ToolSpec(
        name="update_instructions",
        description="Update the persona's instructions. This replaces the entire instruction body.",
        parameters=_object(
            {
                "instructions": {"type": "string", "description": "The new instructions for the persona"},
                "expectedVersion": _EXPECTED_VERSION,
            },
            ("instructions",),
        ),
        is_write=True,
    ),
    ToolSpec(
        name="list_test_inputs",
        description="List all test inputs linked to this persona.",
        parameters=_object(),
    ),
    ToolSpec(
        name="get_test_input",
        description="Get a specific test input by ID.",
        parameters=_object({"id": _id_property("retrieve")}, ("id",)),
    ),
    ToolSpec(
        name="create_test_input",
        description="Create a new test input and link it to this persona.",
        parameters=_object(
            {
                "content": {
                    "type": "string",
                    "description": "The content of the test input (the test prompt)",
                    "minLength": 1,
                },
                "expectedVersion": _EXPECTED_VERSION,
            },
            ("content",),
        ),
        is_write=True,
    ),
    ToolSpec(
        name="update_test_input",
        description="Update an existing test input's content.",
        parameters=_object(
            {
                "id": _id_property("update"),
                "content": {"type": "string", "description": "The new content for the test input", "minLength": 1},
            },
            ("id", "content"),
        ),
        is_write=True,
    ),
    ToolSpec(
        name="link_test_input",
        description="Link an existing test input (for example one used by another persona) to this persona.",
        parameters=_object(
            {"id": _id_property("link to this persona"), "expectedVersion": _EXPECTED_VERSION},
            ("id",),
        ),
        is_write=True,
    ),
    ToolSpec(
        name="unlink_test_input",
        description=(
            "Remove a test input from this persona. The test input still exists globally and can be "
            "linked to other personas. Use this in most cases when the user wants to remove a test input."
        ),
        parameters=_object(
            {"id": _id_property("unlink from this persona"), "expectedVersion": _EXPECTED_VERSION},
            ("id",),
        ),
        is_write=True,
    ),
    ToolSpec(
        name="delete_test_input",
        description=(
            "Permanently delete a test input from the system. It will no longer be available to any "
            "persona. Only use this when the user explicitly wants the test input gone entirely."
        ),
        parameters=_object({"id": _id_property("permanently delete")}, ("id",)),
        is_write=True,
    ),
    ToolSpec(
        name="run_test",
        description="Run the persona against one of its linked test inputs and return the response.",
        parameters=_object({"id": _id_property("run")}, ("id",)),
        is_write=True,
    ),
    ToolSpec(
        name="get_test_result",
        description="Get the most recent stored result of running this persona against a test input.",
        parameters=_object({"id": _id_property("fetch the latest result for")}, ("id",)),
    ),
)


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


class PersonaToolset:
    """Handlers for :data:`PERSONA_TOOL_SPECS`, bound to an editor and runner."""

    def __init__(self, editor: "PersonaEditor", runner: "TestRunner") -> None:
        self._editor = editor
        self._runner = runner

    def register(self, registry: ToolRegistry) -> ToolRegistry:
        for spec in PERSONA_TOOL_SPECS:
            registry.register_function(spec, getattr(self, spec.name))
        return registry

    # ------------------------------------------------------------------
    # Persona
    # ------------------------------------------------------------------
    async def get_persona(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        persona = await self._editor.get_persona(context.subject_id)
        return _dump(
            {
                "name": persona.name,
                "instructions": persona.instructions,
                "testInputIds": list(persona.test_input_ids),
                "version": persona.version,
            }
        )

    async def update_persona_name(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        name = arguments["name"]
        await self._editor.update_persona(
            context.subject_id,
            name=name,
            expected_version=arguments.get("expectedVersion"),
            source=context.source,
        )
        return f'Successfully updated persona name to "{name}"'

    async def update_instructions(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        await self._editor.update_persona(
            context.subject_id,
            instructions=arguments["instructions"],
            expected_version=arguments.get("expectedVersion"),
            source=context.source,
        )
        return "Successfully updated instructions"

    # ------------------------------------------------------------------
    # Test inputs
    # ------------------------------------------------------------------
    async def list_test_inputs(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        linked = await self._editor.linked_test_inputs(context.subject_id)
        if not linked:
            return "No test inputs configured for this persona"
        return _dump({"testInputs": [{"id": item.id, "content": item.content} for item in linked]})

    async def get_test_input(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input = await self._editor.get_test_input(arguments["id"])
        return _dump({"id": test_input.id, "content": test_input.content})

    async def create_test_input(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input = await self._editor.create_test_input(
            arguments["content"],
            persona_id=context.subject_id,
            expected_version=arguments.get("expectedVersion"),
            source=context.source,
        )
        return _dump({"id": test_input.id, "content": test_input.content})

    async def update_test_input(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input_id = arguments["id"]
        await self._editor.update_test_input(test_input_id, arguments["content"], source=context.source)
        return f'Successfully updated test input "{test_input_id}"'

    async def link_test_input(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input_id = arguments["id"]
        await self._editor.link_test_input(
            context.subject_id,
            test_input_id,
            expected_version=arguments.get("expectedVersion"),
            source=context.source,
        )
        return f'Successfully linked test input "{test_input_id}" to this persona'

    async def unlink_test_input(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input_id = arguments["id"]
        await self._editor.unlink_test_input(
            context.subject_id,
            test_input_id,
            expected_version=arguments.get("expectedVersion"),
            source=context.source,
        )
        return f'Successfully unlinked test input "{test_input_id}" from this persona'

    async def delete_test_input(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input_id = arguments["id"]
        # the current persona must exist even though deletion ignores link state
        await self._editor.get_persona(context.subject_id)
        await self._editor.delete_test_input(test_input_id, source=context.source)
        return f'Successfully deleted test input "{test_input_id}" permanently'

    # ------------------------------------------------------------------
    # Test runs
    # ------------------------------------------------------------------
    async def run_test(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input_id = arguments["id"]
        persona = await self._editor.get_persona(context.subject_id)
        if not persona.is_linked(test_input_id):
            raise NotLinkedError(test_input_id=test_input_id)
        result = await self._runner.run_test(context.subject_id, test_input_id, source=context.source)
        return _dump(
            {
                "id": result.id,
                "testInputId": result.test_input_id,
                "status": result.status.value,
                "output": result.output,
                "error": result.error,
            }
        )

    async def get_test_result(self, arguments: Mapping[str, Any], context: ToolContext) -> str:
        test_input_id = arguments["id"]
        result = await self._runner.latest_result(context.subject_id, test_input_id)
        if result is None:
            return f'No result found for test input "{test_input_id}"'
        return _dump(result.to_dict())


def build_persona_registry(editor: "PersonaEditor", runner: "TestRunner") -> ToolRegistry:
    """Return a fresh registry holding every persona tool."""

    return PersonaToolset(editor, runner).register(ToolRegistry())
