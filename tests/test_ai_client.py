"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest

from openai import AsyncOpenAI, AuthenticationError, BadRequestError, InternalServerError, RateLimitError

from personalab.ai.ai_types import ModelStreamEvent, StreamEventType
from personalab.ai.client import AIClient, ClientSettings, to_chat_messages, to_chat_tools


def _chunk(
    *,
    content: str | None = None,
    tool_calls: list[SimpleNamespace] | None = None,
    finish_reason: str | None = None,
) -> SimpleNamespace:
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def _tool_delta(index: int, *, id: str | None = None, name: str | None = None, arguments: str | None = None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class _FakeStream:
    def __init__(self, chunks: Iterable[Any]):
        self._iterator = iter(list(chunks))
        self.closed = False

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc

    async def close(self) -> None:
        self.closed = True


class _FakeCompletions:
    """Returns queued responses from ``create``; exceptions are raised instead."""

    def __init__(self, *responses: Any):
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _make_client(*responses: Any, **settings: Any) -> tuple[AIClient, _FakeCompletions]:
    completions = _FakeCompletions(*responses)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    options = {"base_url": "http://local", "api_key": "test", "model": "stub", "retry_min_seconds": 0.0}
    options.update(settings)
    client = AIClient(ClientSettings(**options), client=cast(AsyncOpenAI, fake))
    return client, completions


async def _collect(client: AIClient, **kwargs: Any) -> list[ModelStreamEvent]:
    return [event async for event in client.stream_messages(**kwargs)]


@pytest.mark.asyncio
async def test_stream_translates_text_and_tool_chunks() -> None:
    stream = _FakeStream(
        [
            _chunk(content="Hel"),
            _chunk(content="lo"),
            _chunk(tool_calls=[_tool_delta(0, id="call_1", name="get_persona", arguments='{"a"')]),
            _chunk(tool_calls=[_tool_delta(0, arguments=":1}")]),
            _chunk(finish_reason="tool_calls"),
        ]
    )
    client, completions = _make_client(stream)

    events = await _collect(client, system="sys", messages=[{"role": "user", "content": "hi"}], max_tokens=64)

    assert events == [
        ModelStreamEvent.text_block_start(0),
        ModelStreamEvent.text_delta(0, "Hel"),
        ModelStreamEvent.text_delta(0, "lo"),
        ModelStreamEvent.block_stop(0),
        ModelStreamEvent.tool_block_start(1, "call_1", "get_persona"),
        ModelStreamEvent.input_json_delta(1, '{"a"'),
        ModelStreamEvent.input_json_delta(1, ":1}"),
        ModelStreamEvent.block_stop(1),
        ModelStreamEvent.message_delta(StreamEventType.STOP_TOOL_USE),
        ModelStreamEvent.message_stop(),
    ]
    assert stream.closed is True
    call = completions.calls[0]
    assert call["stream"] is True
    assert call["max_tokens"] == 64
    assert "tools" not in call


@pytest.mark.asyncio
async def test_two_tool_calls_open_separate_blocks() -> None:
    stream = _FakeStream(
        [
            _chunk(tool_calls=[_tool_delta(0, id="a", name="one", arguments="{}")]),
            _chunk(tool_calls=[_tool_delta(1, id="b", name="two", arguments="{}")]),
            _chunk(finish_reason="tool_calls"),
        ]
    )
    client, _ = _make_client(stream)

    events = await _collect(client, system="", messages=[])

    starts = [event for event in events if event.type == StreamEventType.CONTENT_BLOCK_START]
    assert [(event.index, event.tool_use_id) for event in starts] == [(0, "a"), (1, "b")]
    assert events[2] == ModelStreamEvent.block_stop(0)


@pytest.mark.parametrize(
    ("finish_reason", "expected"),
    [
        ("stop", StreamEventType.END_TURN),
        ("length", StreamEventType.MAX_TOKENS),
        ("content_filter", "content_filter"),
    ],
)
@pytest.mark.asyncio
async def test_finish_reason_mapping(finish_reason: str, expected: str) -> None:
    client, _ = _make_client(_FakeStream([_chunk(content="x"), _chunk(finish_reason=finish_reason)]))

    events = await _collect(client, system="", messages=[])

    assert ModelStreamEvent.message_delta(expected) in events


@pytest.mark.asyncio
async def test_stream_without_finish_reason_ends_turn() -> None:
    client, _ = _make_client(_FakeStream([_chunk(content="cut off")]))

    events = await _collect(client, system="", messages=[])

    assert events[-3:] == [
        ModelStreamEvent.block_stop(0),
        ModelStreamEvent.message_delta(StreamEventType.END_TURN),
        ModelStreamEvent.message_stop(),
    ]


@pytest.mark.asyncio
async def test_stream_open_is_retried() -> None:
    stream = _FakeStream([_chunk(content="ok"), _chunk(finish_reason="stop")])
    client, completions = _make_client(httpx.ConnectTimeout("slow"), stream, max_retries=2)

    events = await _collect(client, system="", messages=[])

    assert len(completions.calls) == 2
    assert ModelStreamEvent.text_delta(0, "ok") in events


@pytest.mark.asyncio
async def test_non_retryable_error_propagates() -> None:
    client, completions = _make_client(ValueError("bad payload"), max_retries=3)

    with pytest.raises(ValueError):
        await _collect(client, system="", messages=[])

    assert len(completions.calls) == 1


def _status_error(error_type: type, status: int) -> Exception:
    response = httpx.Response(status, request=httpx.Request("POST", "http://local/chat/completions"))
    return error_type(f"status {status}", response=response, body=None)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error_type", "status"),
    [(RateLimitError, 429), (InternalServerError, 503)],
)
async def test_transient_status_errors_are_retried(error_type: type, status: int) -> None:
    stream = _FakeStream([_chunk(content="ok"), _chunk(finish_reason="stop")])
    client, completions = _make_client(_status_error(error_type, status), stream, max_retries=2)

    await _collect(client, system="", messages=[])

    assert len(completions.calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error_type", "status"),
    [(BadRequestError, 400), (AuthenticationError, 401)],
)
async def test_request_errors_are_not_retried(error_type: type, status: int) -> None:
    client, completions = _make_client(_status_error(error_type, status), max_retries=3)

    with pytest.raises(error_type):
        await client.complete(system="", prompt="?")

    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_complete_returns_message_content() -> None:
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Four."))])
    client, completions = _make_client(response)

    answer = await client.complete(system="Be brief.", prompt="2+2?", max_tokens=16)

    assert answer == "Four."
    assert completions.calls[0]["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "2+2?"},
    ]
    assert "stream" not in completions.calls[0]


@pytest.mark.asyncio
async def test_complete_without_choices_is_empty() -> None:
    client, _ = _make_client(SimpleNamespace(choices=[]))

    assert await client.complete(system="", prompt="?") == ""


def test_to_chat_messages_maps_blocks() -> None:
    messages = [
        {"role": "user", "content": [{"type": "text", "text": "Rename it"}]},
        {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "On it."},
                {"type": "tool_use", "id": "t1", "name": "update_persona_name", "input": {"name": "Bo"}},
            ],
        },
        {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "Nope", "is_error": True}],
        },
    ]

    chat = to_chat_messages("system text", messages)

    assert chat == [
        {"role": "system", "content": "system text"},
        {"role": "user", "content": "Rename it"},
        {
            "role": "assistant",
            "content": "On it.",
            "tool_calls": [
                {
                    "id": "t1",
                    "type": "function",
                    "function": {"name": "update_persona_name", "arguments": '{"name": "Bo"}'},
                }
            ],
        },
        {"role": "tool", "tool_call_id": "t1", "content": "Error: Nope"},
    ]


def test_to_chat_messages_assistant_with_only_tools_has_null_content() -> None:
    chat = to_chat_messages(
        "",
        [{"role": "assistant", "content": [{"type": "tool_use", "id": "t", "name": "get_persona", "input": {}}]}],
    )

    assert chat[0]["content"] is None
    assert chat[0]["tool_calls"][0]["function"]["arguments"] == "{}"


def test_to_chat_tools() -> None:
    tools = to_chat_tools(
        [
            {"name": "get_persona", "description": "Read it", "input_schema": {"type": "object", "properties": {}}},
            {"name": "bare"},
        ]
    )

    assert tools[0] == {
        "type": "function",
        "function": {
            "name": "get_persona",
            "description": "Read it",
            "parameters": {"type": "object", "properties": {}},
        },
    }
    assert tools[1]["function"]["parameters"] == {"type": "object", "properties": {}}


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    class _Closable:
        def __init__(self) -> None:
            self.closed = False
            self.chat = SimpleNamespace(completions=_FakeCompletions())

        async def close(self) -> None:
            self.closed = True

    stub = _Closable()
    client = AIClient(
        ClientSettings(base_url="http://local", api_key="test", model="stub"),
        client=cast(AsyncOpenAI, stub),
    )

    await client.aclose()

    assert stub.closed is True
