"""Tests for the agent loop state machine."""

from __future__ import annotations

import asyncio
import json

import pytest

from personalab.ai.ai_types import ModelStreamEvent, StreamEventType
from personalab.ai.conversation import AgentSession, AssistantTextTurn, ToolCallTurn, ToolResultTurn, UserTurn
from personalab.ai.orchestration.agent_loop import (
    INTERRUPTED_TOOL_OUTPUT,
    AgentLoop,
    AgentLoopConfig,
    LoopState,
)
from personalab.ai.orchestration.event_log import ChatEventLogger
from personalab.ai.orchestration.prompts import RECENT_CHANGES_HEADER
from personalab.core.models import ChangeSource


def _make_loop(model_client, dispatcher, changelog, session_service, editor, **config) -> AgentLoop:
    return AgentLoop(
        client=model_client,
        dispatcher=dispatcher,
        changelog=changelog,
        sessions=session_service,
        editor=editor,
        config=AgentLoopConfig(**config),
    )


async def _collect(stream) -> list[dict]:
    return [event.to_record() async for event in stream]


@pytest.fixture
def loop(model_client, dispatcher, changelog, session_service, editor) -> AgentLoop:
    return _make_loop(model_client, dispatcher, changelog, session_service, editor)


# =============================================================================
# Streaming and completion
# =============================================================================


class TestTextOnlyInvocation:
    @pytest.mark.asyncio
    async def test_streams_deltas_then_completes(self, loop, model_client, scripted, persona, storage, editor) -> None:
        model_client.rounds.append(scripted.text_round("Hel", "lo"))
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "hi"))

        assert [record["type"] for record in records] == ["text_delta", "text_delta", "text_complete", "done"]
        assert records[2]["content"] == "Hello"
        assert loop.state is LoopState.DONE
        assert [type(turn) for turn in session.turns] == [UserTurn, AssistantTextTurn]

        stored = await storage.get_session(session.id)
        assert stored is not None
        assert len(stored.turns) == 2
        assert (await editor.get_persona(persona.id)).agent_session_id == session.id

    @pytest.mark.asyncio
    async def test_empty_text_block_adds_no_turn(self, loop, model_client, persona) -> None:
        model_client.rounds.append(
            [
                ModelStreamEvent.text_block_start(0),
                ModelStreamEvent.block_stop(0),
                ModelStreamEvent.message_delta(StreamEventType.END_TURN),
                ModelStreamEvent.message_stop(),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "hi"))

        assert [record["type"] for record in records] == ["done"]
        assert len(session.turns) == 1

    @pytest.mark.asyncio
    async def test_max_tokens_stop_reason_ends_invocation(self, loop, model_client, scripted, persona) -> None:
        model_client.rounds.append(scripted.text_round("cut", stop_reason=StreamEventType.MAX_TOKENS))
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "hi"))

        assert records[-1]["type"] == "done"
        assert len(model_client.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_pause_turn_requests_another_round(self, loop, model_client, scripted, persona) -> None:
        model_client.rounds.extend(
            [
                scripted.text_round("Thinking", stop_reason=StreamEventType.PAUSE_TURN),
                scripted.text_round("Done"),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "hi"))

        assert records[-1]["type"] == "done"
        assert len(model_client.stream_calls) == 2
        assert [turn.content for turn in session.turns if isinstance(turn, AssistantTextTurn)] == ["Thinking", "Done"]


# =============================================================================
# Tool rounds
# =============================================================================


class TestToolRounds:
    @pytest.mark.asyncio
    async def test_tool_call_executes_and_feeds_result_back(
        self, loop, model_client, scripted, persona, editor, changelog
    ) -> None:
        model_client.rounds.extend(
            [
                scripted.tool_round(("t1", "update_persona_name", '{"name": "Bob"}'), text="Renaming."),
                scripted.text_round("Renamed to Bob."),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "Call it Bob"))

        assert [record["type"] for record in records] == [
            "text_delta",
            "text_complete",
            "tool_call",
            "tool_result",
            "text_delta",
            "text_complete",
            "done",
        ]
        call, result = records[2], records[3]
        assert call["toolUseId"] == "t1"
        assert call["toolName"] == "update_persona_name"
        assert call["input"] == {"name": "Bob"}
        assert result["toolUseId"] == "t1"
        assert result["isError"] is False
        assert result["output"] == 'Successfully updated persona name to "Bob"'

        assert (await editor.get_persona(persona.id)).name == "Bob"
        entries = await changelog.entries()
        assert entries[-1].source is ChangeSource.AGENT

        second_request = model_client.stream_calls[1]["messages"]
        assert [message["role"] for message in second_request] == ["user", "assistant", "user"]
        assert second_request[2]["content"][0]["tool_use_id"] == "t1"

    @pytest.mark.asyncio
    async def test_calls_in_one_round_run_sequentially_in_order(
        self, loop, model_client, scripted, persona, editor
    ) -> None:
        model_client.rounds.extend(
            [
                scripted.tool_round(
                    ("t1", "create_test_input", '{"content": "What is 2+2?"}'),
                    ("t2", "list_test_inputs", ""),
                ),
                scripted.text_round("Added."),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "Add a math test"))

        results = [record for record in records if record["type"] == "tool_result"]
        assert [record["toolUseId"] for record in results] == ["t1", "t2"]
        listing = json.loads(results[1]["output"])
        assert [item["content"] for item in listing["testInputs"]] == ["What is 2+2?"]
        assert len((await editor.get_persona(persona.id)).test_input_ids) == 1

    @pytest.mark.asyncio
    async def test_undecodable_tool_input_becomes_empty_object(self, loop, model_client, scripted, persona) -> None:
        model_client.rounds.extend(
            [
                scripted.tool_round(("t1", "update_persona_name", '{"name": "Bo')),
                scripted.text_round("Sorry."),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "rename"))

        call = next(record for record in records if record["type"] == "tool_call")
        result = next(record for record in records if record["type"] == "tool_result")
        assert call["input"] == {}
        assert result["isError"] is True
        assert result["output"].startswith("Invalid input for update_persona_name")
        assert records[-1]["type"] == "done"

    @pytest.mark.asyncio
    async def test_tool_error_is_fed_back_not_raised(self, loop, model_client, scripted, persona, editor) -> None:
        model_client.rounds.extend(
            [
                scripted.tool_round(("t1", "unlink_test_input", '{"id": "nope"}')),
                scripted.text_round("It was not linked."),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "unlink it"))

        result = next(record for record in records if record["type"] == "tool_result")
        assert result["isError"] is True
        assert result["output"] == 'Test input "nope" is not linked to this persona'
        assert records[-1]["type"] == "done"
        assert (await editor.get_persona(persona.id)).version == persona.version

    @pytest.mark.asyncio
    async def test_round_cap_fails_invocation(
        self, model_client, dispatcher, changelog, session_service, editor, scripted, persona, storage
    ) -> None:
        loop = _make_loop(model_client, dispatcher, changelog, session_service, editor, max_rounds=2)
        model_client.rounds.extend(
            [
                scripted.tool_round(("t1", "get_persona", "{}")),
                scripted.tool_round(("t2", "get_persona", "{}")),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "loop forever"))

        assert records[-1] == {"type": "error", "message": "Agent did not finish within 2 rounds"}
        assert loop.state is LoopState.FAILED
        assert (await storage.get_session(session.id)) is not None


# =============================================================================
# Failure handling
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_stream_exception_keeps_partial_progress(self, loop, model_client, persona, storage) -> None:
        model_client.rounds.append(
            [
                ModelStreamEvent.text_block_start(0),
                ModelStreamEvent.text_delta(0, "Working"),
                ModelStreamEvent.block_stop(0),
                RuntimeError("stream dropped"),
            ]
        )
        session = AgentSession.create(persona.id)

        records = await _collect(loop.invoke(session, persona.id, "hi"))

        assert [record["type"] for record in records] == ["text_delta", "text_complete", "error"]
        assert records[-1]["message"] == "stream dropped"
        assert loop.state is LoopState.FAILED

        stored = await storage.get_session(session.id)
        assert stored is not None
        assert [type(turn) for turn in stored.turns] == [UserTurn, AssistantTextTurn]

    @pytest.mark.asyncio
    async def test_missing_persona_reports_error(self, loop) -> None:
        session = AgentSession.create("ghost")

        records = await _collect(loop.invoke(session, "ghost", "hi"))

        assert records == [{"type": "error", "message": "Persona not found"}]

    @pytest.mark.asyncio
    async def test_orphaned_tool_call_is_closed_before_next_message(self, loop, model_client, scripted, persona) -> None:
        session = AgentSession.create(persona.id)
        session.turns.extend(
            [
                UserTurn(content="first"),
                ToolCallTurn(tool_invocation_id="t-old", tool_name="get_persona"),
            ]
        )
        model_client.rounds.append(scripted.text_round("Back."))

        await _collect(loop.invoke(session, persona.id, "second"))

        repaired = session.turns[2]
        assert isinstance(repaired, ToolResultTurn)
        assert repaired.tool_invocation_id == "t-old"
        assert repaired.is_error is True
        assert repaired.output == INTERRUPTED_TOOL_OUTPUT
        assert isinstance(session.turns[3], UserTurn)


# =============================================================================
# Changelog awareness
# =============================================================================


class TestRecentChanges:
    @pytest.mark.asyncio
    async def test_unseen_changes_are_rendered_once(self, loop, model_client, scripted, persona, editor, changelog) -> None:
        await editor.update_persona(persona.id, instructions="Be terse.")
        model_client.rounds.extend([scripted.text_round("Noted."), scripted.text_round("Still here.")])
        session = AgentSession.create(persona.id)

        await _collect(loop.invoke(session, persona.id, "hi"))
        first_system = model_client.stream_calls[0]["system"]
        assert RECENT_CHANGES_HEADER in first_system
        assert "(UI): Instructions for \"Helper\" updated" in first_system
        assert session.last_seen_changelog_id == await changelog.latest_id()

        await _collect(loop.invoke(session, persona.id, "again"))
        assert RECENT_CHANGES_HEADER not in model_client.stream_calls[1]["system"]

    @pytest.mark.asyncio
    async def test_system_prompt_names_the_persona(self, loop, model_client, scripted, persona) -> None:
        model_client.rounds.append(scripted.text_round("ok"))
        session = AgentSession.create(persona.id)

        await _collect(loop.invoke(session, persona.id, "hi"))

        system = model_client.stream_calls[0]["system"]
        assert f"ID: {persona.id}" in system
        assert "Name: Helper" in system
        assert {tool["name"] for tool in model_client.stream_calls[0]["tools"]} >= {"get_persona", "run_test"}


# =============================================================================
# Background runs
# =============================================================================


class TestAgentRun:
    @pytest.mark.asyncio
    async def test_run_completes_without_an_observer(self, loop, model_client, scripted, persona, editor) -> None:
        model_client.rounds.extend(
            [
                scripted.tool_round(("t1", "update_instructions", '{"instructions": "New"}')),
                scripted.text_round("Updated."),
            ]
        )
        session = AgentSession.create(persona.id)

        run = loop.start(session, persona.id, "update")
        await run.wait()

        assert run.done()
        assert (await editor.get_persona(persona.id)).instructions == "New"
        records = [event.to_record() async for event in run.events()]
        assert records[-1]["type"] == "done"

    @pytest.mark.asyncio
    async def test_cancel_stops_the_run(self, loop, persona) -> None:
        gate = asyncio.Event()

        class _BlockingClient:
            async def stream_messages(self, **kwargs):
                await gate.wait()
                yield ModelStreamEvent.message_stop()

        loop._client = _BlockingClient()
        run = loop.start(AgentSession.create(persona.id), persona.id, "hi")
        await asyncio.sleep(0)

        run.cancel()
        await run.wait()

        assert run.task.cancelled()
        assert [event async for event in run.events()] == []

    @pytest.mark.asyncio
    async def test_cancel_finalizes_the_event_log(
        self, dispatcher, changelog, session_service, editor, persona, storage, tmp_path
    ) -> None:
        gate = asyncio.Event()
        started: list = []

        class _BlockingClient:
            async def stream_messages(self, **kwargs):
                await gate.wait()
                yield ModelStreamEvent.message_stop()

        class _RecordingEventLogger(ChatEventLogger):
            def start_run(self, **kwargs):
                log_run = super().start_run(**kwargs)
                started.append(log_run)
                return log_run

        loop = AgentLoop(
            client=_BlockingClient(),
            dispatcher=dispatcher,
            changelog=changelog,
            sessions=session_service,
            editor=editor,
            event_logger=_RecordingEventLogger(enabled=True, base_dir=tmp_path),
        )
        session = AgentSession.create(persona.id)
        run = loop.start(session, persona.id, "hi")
        for _ in range(5):
            await asyncio.sleep(0)

        run.cancel()
        await run.wait()

        assert len(started) == 1
        assert started[0].finalized is True
        entries = [json.loads(line) for line in started[0].path.read_text(encoding="utf-8").splitlines()]
        assert [entry["event"] for entry in entries] == ["start", "failure"]
        assert entries[-1]["message"] == "CancelledError"
        assert loop.state is LoopState.FAILED
        assert await storage.get_session(session.id) is not None
