"""Shared typing contracts for the model client and the agent loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

__all__ = ["StreamEventType", "ModelStreamEvent", "ModelClient"]


class StreamEventType:
    """Names of the content-block streaming events consumed by the agent loop."""

    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"

    # block kinds and delta kinds
    TEXT = "text"
    TOOL_USE = "tool_use"
    TEXT_DELTA = "text_delta"
    INPUT_JSON_DELTA = "input_json_delta"

    # stop reasons
    END_TURN = "end_turn"
    STOP_TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    PAUSE_TURN = "pause_turn"


@dataclass(slots=True, frozen=True)
class ModelStreamEvent:
    """One provider-neutral streaming event.

    Only the fields relevant to ``type`` are populated: block starts carry
    ``block_type`` (plus ``tool_use_id``/``tool_name`` for tool blocks), deltas
    carry ``delta_type`` and ``text`` or ``partial_json``, and message deltas
    carry ``stop_reason``.
    """

    type: str
    index: int | None = None
    block_type: str | None = None
    tool_use_id: str | None = None
    tool_name: str | None = None
    delta_type: str | None = None
    text: str | None = None
    partial_json: str | None = None
    stop_reason: str | None = None

    @classmethod
    def text_block_start(cls, index: int) -> "ModelStreamEvent":
        return cls(
            type=StreamEventType.CONTENT_BLOCK_START, index=index, block_type=StreamEventType.TEXT
        )

    @classmethod
    def tool_block_start(cls, index: int, tool_use_id: str, tool_name: str) -> "ModelStreamEvent":
        return cls(
            type=StreamEventType.CONTENT_BLOCK_START,
            index=index,
            block_type=StreamEventType.TOOL_USE,
            tool_use_id=tool_use_id,
            tool_name=tool_name,
        )

    @classmethod
    def text_delta(cls, index: int, text: str) -> "ModelStreamEvent":
        return cls(
            type=StreamEventType.CONTENT_BLOCK_DELTA,
            index=index,
            delta_type=StreamEventType.TEXT_DELTA,
            text=text,
        )

    @classmethod
    def input_json_delta(cls, index: int, partial_json: str) -> "ModelStreamEvent":
        return cls(
            type=StreamEventType.CONTENT_BLOCK_DELTA,
            index=index,
            delta_type=StreamEventType.INPUT_JSON_DELTA,
            partial_json=partial_json,
        )

    @classmethod
    def block_stop(cls, index: int) -> "ModelStreamEvent":
        return cls(type=StreamEventType.CONTENT_BLOCK_STOP, index=index)

    @classmethod
    def message_delta(cls, stop_reason: str | None) -> "ModelStreamEvent":
        return cls(type=StreamEventType.MESSAGE_DELTA, stop_reason=stop_reason)

    @classmethod
    def message_stop(cls) -> "ModelStreamEvent":
        return cls(type=StreamEventType.MESSAGE_STOP)


@runtime_checkable
class ModelClient(Protocol):
    """Protocol for generative model clients used by the agent loop and test runner.

    ``messages`` are the projector's content-block messages; ``tools`` are
    ``{name, description, input_schema}`` mappings. Implementations translate
    both into their own wire format.
    """

    def stream_messages(
        self,
        *,
        system: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        ...

    async def complete(
        self,
        *,
        system: str,
        prompt: str,
        max_tokens: int | None = None,
    ) -> str:
        ...
