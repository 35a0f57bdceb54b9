"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

import pytest
import pytest_asyncio

from personalab.ai.ai_types import ModelStreamEvent, StreamEventType
from personalab.ai.orchestration.sessions import AgentSessionService
from personalab.ai.tools.dispatcher import ToolDispatcher
from personalab.ai.tools.persona_tools import build_persona_registry
from personalab.services.broadcaster import ChangeBroadcaster
from personalab.services.changelog import ChangeRecorder, InMemoryChangelog
from personalab.services.persona_editor import PersonaEditor
from personalab.services.test_runner import TestRunner
from personalab.storage.memory import InMemoryStorage


class ScriptedModelClient:
    """Model client replaying one scripted event list per ``stream_messages`` call.

    An ``Exception`` inside a script is raised at that point of the stream.
    ``complete`` answers from ``completions`` in order, then repeats the last.
    """

    def __init__(
        self,
        rounds: Iterable[Sequence[ModelStreamEvent | Exception]] = (),
        *,
        completions: Sequence[str | Exception] = ("Test output",),
    ) -> None:
        self.rounds = [list(events) for events in rounds]
        self.completions = list(completions)
        self.stream_calls: list[dict[str, Any]] = []
        self.complete_calls: list[dict[str, Any]] = []

    async def stream_messages(
        self,
        *,
        system: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int | None = None,
    ):
        self.stream_calls.append(
            {"system": system, "messages": list(messages), "tools": list(tools or []), "max_tokens": max_tokens}
        )
        if not self.rounds:
            raise AssertionError("ScriptedModelClient ran out of rounds")
        for event in self.rounds.pop(0):
            if isinstance(event, Exception):
                raise event
            yield event

    async def complete(self, *, system: str, prompt: str, max_tokens: int | None = None) -> str:
        self.complete_calls.append({"system": system, "prompt": prompt, "max_tokens": max_tokens})
        answer = self.completions.pop(0) if len(self.completions) > 1 else self.completions[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    # Script builders ---------------------------------------------------
    @staticmethod
    def text_round(*chunks: str, stop_reason: str = StreamEventType.END_TURN) -> list[ModelStreamEvent]:
        events = [ModelStreamEvent.text_block_start(0)]
        events.extend(ModelStreamEvent.text_delta(0, chunk) for chunk in chunks)
        events.extend(
            [
                ModelStreamEvent.block_stop(0),
                ModelStreamEvent.message_delta(stop_reason),
                ModelStreamEvent.message_stop(),
            ]
        )
        return events

    @staticmethod
    def tool_round(
        *calls: tuple[str, str, str],
        text: str | None = None,
        stop_reason: str = StreamEventType.STOP_TOOL_USE,
    ) -> list[ModelStreamEvent]:
        """Build a round from ``(tool_use_id, tool_name, raw_json_input)`` triples."""

        events: list[ModelStreamEvent] = []
        index = 0
        if text is not None:
            events.extend(
                [
                    ModelStreamEvent.text_block_start(0),
                    ModelStreamEvent.text_delta(0, text),
                    ModelStreamEvent.block_stop(0),
                ]
            )
            index = 1
        for tool_use_id, tool_name, raw_input in calls:
            events.append(ModelStreamEvent.tool_block_start(index, tool_use_id, tool_name))
            if raw_input:
                events.append(ModelStreamEvent.input_json_delta(index, raw_input))
            events.append(ModelStreamEvent.block_stop(index))
            index += 1
        events.extend([ModelStreamEvent.message_delta(stop_reason), ModelStreamEvent.message_stop()])
        return events


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def changelog() -> InMemoryChangelog:
    return InMemoryChangelog()


@pytest.fixture
def broadcaster() -> ChangeBroadcaster:
    return ChangeBroadcaster()


@pytest.fixture
def state_events(broadcaster: ChangeBroadcaster) -> list:
    """Events emitted after the fixture is created (the ``connected`` event is dropped)."""

    received: list = []
    broadcaster.subscribe(received.append)
    received.clear()
    return received


@pytest.fixture
def recorder(changelog: InMemoryChangelog, broadcaster: ChangeBroadcaster) -> ChangeRecorder:
    return ChangeRecorder(changelog, broadcaster)


@pytest.fixture
def editor(storage: InMemoryStorage, broadcaster: ChangeBroadcaster, recorder: ChangeRecorder) -> PersonaEditor:
    return PersonaEditor(
        personas=storage,
        test_inputs=storage,
        results=storage,
        broadcaster=broadcaster,
        recorder=recorder,
    )


@pytest.fixture
def model_client() -> ScriptedModelClient:
    return ScriptedModelClient()


@pytest.fixture
def scripted() -> type[ScriptedModelClient]:
    return ScriptedModelClient


@pytest.fixture
def runner(
    editor: PersonaEditor,
    storage: InMemoryStorage,
    model_client: ScriptedModelClient,
    broadcaster: ChangeBroadcaster,
    recorder: ChangeRecorder,
) -> TestRunner:
    return TestRunner(
        editor=editor,
        results=storage,
        client=model_client,
        broadcaster=broadcaster,
        recorder=recorder,
        max_tokens=256,
    )


@pytest.fixture
def dispatcher(editor: PersonaEditor, runner: TestRunner) -> ToolDispatcher:
    return ToolDispatcher(build_persona_registry(editor, runner))


@pytest.fixture
def session_service(storage: InMemoryStorage, editor: PersonaEditor, changelog: InMemoryChangelog) -> AgentSessionService:
    return AgentSessionService(storage, editor, changelog)


@pytest_asyncio.fixture
async def persona(editor: PersonaEditor):
    return await editor.create_persona("Helper", "Be helpful.")
