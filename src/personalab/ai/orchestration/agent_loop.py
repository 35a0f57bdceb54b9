"""Agent loop driving the persona editing conversation.

One invocation streams a model response, turns it into turns on the session's
:class:`~personalab.ai.conversation.turns.TurnLog`, runs the requested tools
and repeats until the model ends its turn. Observers receive
:class:`LoopEvent` records as they happen.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Mapping

from ...core.ids import generate_id
from ..ai_types import ModelClient, ModelStreamEvent, StreamEventType
from ..conversation.projector import project
from ..conversation.session import AgentSession
from ..conversation.turns import AssistantTextTurn, ToolCallTurn, ToolResultTurn, UserTurn
from ..tools.dispatcher import ToolDispatcher
from .event_log import ChatEventLogger
from .prompts import build_system_prompt, format_changelog_for_prompt
from .sessions import AgentSessionService

__all__ = [
    "AgentLoop",
    "AgentLoopConfig",
    "AgentRun",
    "LoopEvent",
    "LoopState",
    "RoundLimitExceeded",
    "INTERRUPTED_TOOL_OUTPUT",
]

LOGGER = logging.getLogger(__name__)

INTERRUPTED_TOOL_OUTPUT = "Tool call was interrupted before it produced a result"


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    DONE = "done"
    FAILED = "failed"


class RoundLimitExceeded(RuntimeError):
    """Raised when the model keeps requesting rounds past ``max_rounds``."""


@dataclass(slots=True, frozen=True)
class LoopEvent:
    """One record published to chat observers."""

    type: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {"type": self.type, **self.payload}

    @classmethod
    def text_delta(cls, content: str) -> "LoopEvent":
        return cls("text_delta", {"content": content})

    @classmethod
    def text_complete(cls, turn: AssistantTextTurn) -> "LoopEvent":
        return cls("text_complete", {"id": turn.id, "content": turn.content})

    @classmethod
    def tool_call(cls, turn: ToolCallTurn) -> "LoopEvent":
        return cls(
            "tool_call",
            {
                "id": turn.id,
                "toolUseId": turn.tool_invocation_id,
                "toolName": turn.tool_name,
                "input": dict(turn.input),
            },
        )

    @classmethod
    def tool_result(cls, turn: ToolResultTurn) -> "LoopEvent":
        return cls(
            "tool_result",
            {
                "id": turn.id,
                "toolUseId": turn.tool_invocation_id,
                "output": turn.output,
                "isError": turn.is_error,
            },
        )

    @classmethod
    def done(cls) -> "LoopEvent":
        return cls("done")

    @classmethod
    def error(cls, message: str) -> "LoopEvent":
        return cls("error", {"message": message})


@dataclass(slots=True)
class AgentLoopConfig:
    max_tokens: int = 4096
    max_rounds: int = 25


# ---------------------------------------------------------------------------
# Stream buffers
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _TextBuffer:
    parts: list[str] = field(default_factory=list)

    def flush(self) -> AssistantTextTurn | None:
        text = "".join(self.parts)
        return AssistantTextTurn(content=text) if text else None


@dataclass(slots=True)
class _ToolBuffer:
    tool_use_id: str
    tool_name: str
    parts: list[str] = field(default_factory=list)

    def flush(self) -> ToolCallTurn:
        return ToolCallTurn(
            tool_invocation_id=self.tool_use_id,
            tool_name=self.tool_name,
            input=_decode_tool_input(self.tool_name, "".join(self.parts)),
        )


def _decode_tool_input(tool_name: str, raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.debug("Discarding undecodable input for tool %s: %r", tool_name, raw)
        return {}
    if not isinstance(decoded, dict):
        LOGGER.debug("Discarding non-object input for tool %s: %r", tool_name, decoded)
        return {}
    return decoded


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


class AgentLoop:
    """Runs agent invocations against one model client and tool dispatcher."""

    def __init__(
        self,
        *,
        client: ModelClient,
        dispatcher: ToolDispatcher,
        changelog,
        sessions: AgentSessionService,
        editor,
        event_logger: ChatEventLogger | None = None,
        config: AgentLoopConfig | None = None,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._changelog = changelog
        self._sessions = sessions
        self._editor = editor
        self._event_logger = event_logger or ChatEventLogger(enabled=False)
        self._config = config or AgentLoopConfig()
        self._state = LoopState.DONE

    @property
    def state(self) -> LoopState:
        return self._state

    @staticmethod
    def add_user_message(session: AgentSession, message: str) -> UserTurn:
        """Append a user turn, first closing any tool call left without a result."""

        for orphan in session.turns.orphaned_tool_calls():
            LOGGER.info("Closing interrupted tool call %s in session %s", orphan.tool_invocation_id, session.id)
            session.turns.append(
                ToolResultTurn(
                    tool_invocation_id=orphan.tool_invocation_id,
                    output=INTERRUPTED_TOOL_OUTPUT,
                    is_error=True,
                )
            )
        return session.turns.append(UserTurn(content=message))

    async def invoke(self, session: AgentSession, persona_id: str, message: str) -> AsyncIterator[LoopEvent]:
        self.add_user_message(session, message)
        async for event in self.run(session, persona_id):
            yield event

    def start(self, session: AgentSession, persona_id: str, message: str) -> "AgentRun":
        """Run :meth:`invoke` in its own task, independent of any observer."""

        return AgentRun(self.invoke(session, persona_id, message))

    async def run(self, session: AgentSession, persona_id: str) -> AsyncIterator[LoopEvent]:
        """Drive the session's turn log until the model finishes or fails."""

        self._state = LoopState.AWAITING_MODEL
        rounds = 0
        tool_calls = 0
        try:
            persona = await self._editor.get_persona(persona_id)
            unseen = await self._changelog.entries(session.last_seen_changelog_id)
            latest = await self._changelog.latest_id()
            if latest is not None:
                session.last_seen_changelog_id = latest
            system = build_system_prompt(persona, format_changelog_for_prompt(unseen))
            log_run = self._event_logger.start_run(
                run_id=generate_id(),
                persona_id=persona_id,
                message=_last_user_message(session),
                history_length=len(session.turns),
                unseen_changes=len(unseen),
            )

            with log_run:
                while True:
                    if rounds >= self._config.max_rounds:
                        raise RoundLimitExceeded(
                            f"Agent did not finish within {self._config.max_rounds} rounds"
                        )
                    rounds += 1
                    self._state = LoopState.AWAITING_MODEL
                    round_calls: list[ToolCallTurn] = []
                    round_text: list[str] = []
                    stop_reason: str | None = None
                    buffer: _TextBuffer | _ToolBuffer | None = None

                    stream = self._client.stream_messages(
                        system=system,
                        messages=project(session.turns),
                        tools=self._dispatcher.schemas(),
                        max_tokens=self._config.max_tokens,
                    )
                    async for event in stream:
                        if self._state is LoopState.AWAITING_MODEL:
                            self._state = LoopState.STREAMING
                        if event.type == StreamEventType.CONTENT_BLOCK_START:
                            buffer = _open_buffer(event)
                        elif event.type == StreamEventType.CONTENT_BLOCK_DELTA:
                            if isinstance(buffer, _TextBuffer) and event.delta_type == StreamEventType.TEXT_DELTA:
                                buffer.parts.append(event.text or "")
                                yield LoopEvent.text_delta(event.text or "")
                            elif isinstance(buffer, _ToolBuffer) and event.delta_type == StreamEventType.INPUT_JSON_DELTA:
                                buffer.parts.append(event.partial_json or "")
                        elif event.type == StreamEventType.CONTENT_BLOCK_STOP:
                            if buffer is not None:
                                for record in self._flush(session, buffer, round_calls, round_text):
                                    yield record
                            buffer = None
                        elif event.type == StreamEventType.MESSAGE_DELTA:
                            stop_reason = event.stop_reason
                    if buffer is not None:
                        for record in self._flush(session, buffer, round_calls, round_text):
                            yield record

                    log_run.log_assistant_round(
                        round_index=rounds,
                        stop_reason=stop_reason,
                        response_text="".join(round_text),
                        tool_calls=[
                            {"id": call.tool_invocation_id, "name": call.tool_name, "input": call.input}
                            for call in round_calls
                        ],
                    )

                    if stop_reason == StreamEventType.STOP_TOOL_USE:
                        self._state = LoopState.TOOL_PENDING
                        records = []
                        for call in round_calls:
                            outcome = await self._dispatcher.execute(call.tool_name, call.input, persona_id)
                            result = session.turns.append(
                                ToolResultTurn(
                                    tool_invocation_id=call.tool_invocation_id,
                                    output=outcome.output,
                                    is_error=outcome.is_error,
                                )
                            )
                            tool_calls += 1
                            records.append(
                                {"id": call.tool_invocation_id, "name": call.tool_name, "is_error": outcome.is_error}
                            )
                            yield LoopEvent.tool_result(result)
                        log_run.log_tool_batch(round_index=rounds, records=records)
                        continue
                    if stop_reason == StreamEventType.PAUSE_TURN:
                        continue
                    if stop_reason != StreamEventType.END_TURN:
                        LOGGER.info("Agent round ended with stop reason %r", stop_reason)
                    break

                await self._sessions.save(session)
                await self._sessions.attach(persona_id, session)
                log_run.log_completion(rounds=rounds, tool_call_count=tool_calls)
        except Exception as exc:
            self._state = LoopState.FAILED
            message = str(exc) or type(exc).__name__
            LOGGER.exception("Agent invocation for persona %s failed", persona_id)
            await self._persist_after_failure(session, persona_id)
            yield LoopEvent.error(message)
            return
        except asyncio.CancelledError:
            self._state = LoopState.FAILED
            await self._persist_after_failure(session, persona_id)
            raise

        self._state = LoopState.DONE
        yield LoopEvent.done()

    def _flush(
        self,
        session: AgentSession,
        buffer: _TextBuffer | _ToolBuffer,
        round_calls: list[ToolCallTurn],
        round_text: list[str],
    ) -> list[LoopEvent]:
        if isinstance(buffer, _TextBuffer):
            turn = buffer.flush()
            if turn is None:
                return []
            session.turns.append(turn)
            round_text.append(turn.content)
            return [LoopEvent.text_complete(turn)]
        call = session.turns.append(buffer.flush())
        round_calls.append(call)
        return [LoopEvent.tool_call(call)]

    async def _persist_after_failure(self, session: AgentSession, persona_id: str) -> None:
        try:
            await self._sessions.save(session)
            await self._sessions.attach(persona_id, session)
        except Exception:
            LOGGER.exception("Failed to persist session %s after a failed invocation", session.id)


def _open_buffer(event: ModelStreamEvent) -> _TextBuffer | _ToolBuffer | None:
    if event.block_type == StreamEventType.TEXT:
        return _TextBuffer()
    if event.block_type == StreamEventType.TOOL_USE:
        return _ToolBuffer(tool_use_id=event.tool_use_id or generate_id(), tool_name=event.tool_name or "")
    LOGGER.debug("Ignoring content block of type %r", event.block_type)
    return None


def _last_user_message(session: AgentSession) -> str:
    for turn in reversed(session.turns.turns):
        if isinstance(turn, UserTurn):
            return turn.content
    return ""


# ---------------------------------------------------------------------------
# Background runs
# ---------------------------------------------------------------------------


class AgentRun:
    """An agent invocation running in its own task.

    Events are buffered in a queue so the invocation keeps going whether or
    not anyone is reading them. :meth:`cancel` is the only way to stop it
    early.
    """

    def __init__(self, source: AsyncIterator[LoopEvent]) -> None:
        self._queue: asyncio.Queue[LoopEvent | None] = asyncio.Queue()
        self._task = asyncio.create_task(self._drive(source))

    @property
    def task(self) -> asyncio.Task[None]:
        return self._task

    def done(self) -> bool:
        return self._task.done()

    async def _drive(self, source: AsyncIterator[LoopEvent]) -> None:
        try:
            async for event in source:
                self._queue.put_nowait(event)
        finally:
            self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[LoopEvent]:
        while True:
            # a task cancelled before its first step never reaches _drive's finally
            if self._queue.empty() and self._task.done():
                return
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def cancel(self) -> None:
        self._task.cancel()

    async def wait(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
