"""Async model client built around OpenAI-compatible chat completions.

The agent loop speaks in provider-neutral content blocks. This wrapper maps
those onto chat-completions messages and turns the streamed chunks back into
``content_block_*`` / ``message_delta`` events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence

import httpx
from openai import AsyncOpenAI, APIConnectionError, InternalServerError, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .ai_types import ModelStreamEvent, StreamEventType

__all__ = ["AIClient", "ClientSettings", "to_chat_messages", "to_chat_tools"]

LOGGER = logging.getLogger(__name__)

# Transient failures only; 4xx request errors would fail the same way again.
_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)

_FINISH_REASONS: Mapping[str, str] = {
    "stop": StreamEventType.END_TURN,
    "tool_calls": StreamEventType.STOP_TOOL_USE,
    "function_call": StreamEventType.STOP_TOOL_USE,
    "length": StreamEventType.MAX_TOKENS,
}


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False


class AIClient:
    """Streaming model client with retry semantics on stream open."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_messages(
        self,
        *,
        system: str,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        """Stream one model response as neutral content-block events.

        Only opening the stream is retried; once a chunk has been yielded a
        failure propagates to the caller.
        """

        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": to_chat_messages(system, messages),
            "stream": True,
        }
        chat_tools = to_chat_tools(tools or ())
        if chat_tools:
            payload["tools"] = chat_tools
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        stream = await self._create(payload)

        translator = _ChunkTranslator()
        try:
            async for chunk in stream:
                for event in translator.feed(chunk):
                    yield event
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()
        for event in translator.finish():
            yield event

    async def complete(
        self,
        *,
        system: str,
        prompt: str,
        max_tokens: int | None = None,
    ) -> str:
        """Return a single non-streamed completion for ``prompt``."""

        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        response = await self._create(payload)
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def _create(self, payload: Mapping[str, Any]) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await self._client.chat.completions.create(**payload)
        raise RuntimeError("Retry policy made no attempt to reach the model")

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        await self._client.close()


# ------------------------------------------------------------------
# Request translation
# ------------------------------------------------------------------
def to_chat_messages(system: str, messages: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Translate content-block messages into chat-completions messages.

    Tool results become ``role: tool`` messages (prefixed ``Error:`` when
    flagged as errors); assistant ``tool_use`` blocks become ``tool_calls``.
    """

    chat: List[Dict[str, Any]] = []
    if system:
        chat.append({"role": "system", "content": system})

    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if isinstance(content, str):
            chat.append({"role": role, "content": content})
            continue
        blocks = list(content or ())
        if role == "assistant":
            chat.append(_assistant_message(blocks))
            continue
        texts: List[str] = []
        for block in blocks:
            block_type = block.get("type")
            if block_type == "tool_result":
                output = str(block.get("content", ""))
                if block.get("is_error"):
                    output = f"Error: {output}"
                chat.append(
                    {"role": "tool", "tool_call_id": block.get("tool_use_id"), "content": output}
                )
            elif block_type == "text":
                texts.append(str(block.get("text", "")))
        if texts:
            chat.append({"role": "user", "content": "\n".join(texts)})
    return chat


def _assistant_message(blocks: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    texts: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    for block in blocks:
        block_type = block.get("type")
        if block_type == "text":
            texts.append(str(block.get("text", "")))
        elif block_type == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id"),
                    "type": "function",
                    "function": {
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("input") or {}, ensure_ascii=False),
                    },
                }
            )
    message: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) if texts else None}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return message


def to_chat_tools(tools: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for tool in tools
    ]


# ------------------------------------------------------------------
# Response translation
# ------------------------------------------------------------------
class _ChunkTranslator:
    """Turn chat-completion chunks into content-block events.

    At most one block is open at a time: switching between text and a tool
    call (or between two tool calls) closes the previous block first.
    """

    def __init__(self) -> None:
        self._next_index = 0
        self._open_index: int | None = None
        self._open_kind: str | None = None
        self._open_tool_slot: int | None = None
        self._stop_reason: str | None = None

    def feed(self, chunk: Any) -> List[ModelStreamEvent]:
        events: List[ModelStreamEvent] = []
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return events
        choice = choices[0]
        delta = getattr(choice, "delta", None)

        text = getattr(delta, "content", None) if delta is not None else None
        if text:
            if self._open_kind != StreamEventType.TEXT:
                events.extend(self._close())
                events.append(ModelStreamEvent.text_block_start(self._open(StreamEventType.TEXT)))
            events.append(ModelStreamEvent.text_delta(self._open_index or 0, text))

        for tool_call in (getattr(delta, "tool_calls", None) or []) if delta is not None else []:
            slot = getattr(tool_call, "index", 0) or 0
            function = getattr(tool_call, "function", None)
            if self._open_kind != StreamEventType.TOOL_USE or self._open_tool_slot != slot:
                events.extend(self._close())
                index = self._open(StreamEventType.TOOL_USE)
                self._open_tool_slot = slot
                events.append(
                    ModelStreamEvent.tool_block_start(
                        index,
                        getattr(tool_call, "id", None) or f"call_{index}",
                        getattr(function, "name", None) or "",
                    )
                )
            arguments = getattr(function, "arguments", None) if function is not None else None
            if arguments:
                events.append(ModelStreamEvent.input_json_delta(self._open_index or 0, arguments))

        finish_reason = getattr(choice, "finish_reason", None)
        if finish_reason:
            events.extend(self._close())
            self._stop_reason = _FINISH_REASONS.get(finish_reason, finish_reason)
            events.append(ModelStreamEvent.message_delta(self._stop_reason))
        return events

    def finish(self) -> List[ModelStreamEvent]:
        events = self._close()
        if self._stop_reason is None:
            self._stop_reason = StreamEventType.END_TURN
            events.append(ModelStreamEvent.message_delta(self._stop_reason))
        events.append(ModelStreamEvent.message_stop())
        return events

    def _open(self, kind: str) -> int:
        index = self._next_index
        self._next_index += 1
        self._open_index = index
        self._open_kind = kind
        return index

    def _close(self) -> List[ModelStreamEvent]:
        if self._open_index is None:
            return []
        event = ModelStreamEvent.block_stop(self._open_index)
        self._open_index = None
        self._open_kind = None
        self._open_tool_slot = None
        return [event]
