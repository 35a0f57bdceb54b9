"""aiohttp routes for the agent chat, state sync and UI mutations.

Handlers are closures over the :class:`~personalab.server.context.AppContext`
passed to :func:`register_routes`; nothing here holds module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from aiohttp import web

from ..ai.tools.errors import InvalidParameterError, ToolError
from ..services.persona_editor import coerce_source, parse_expected_version
from ..services.state_events import InitialStateEvent
from ..services.wire import SSE_KEEPALIVE, encode_ndjson, encode_sse
from .context import AppContext

__all__ = ["create_app", "error_middleware", "register_routes"]

LOGGER = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
_NDJSON_HEADERS = {
    "Content-Type": "application/x-ndjson",
    "Cache-Control": "no-cache",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Render domain errors as JSON bodies with their HTTP status."""

    try:
        return await handler(request)
    except ToolError as exc:
        LOGGER.debug("%s %s -> %s: %s", request.method, request.path, exc.error_code, exc.message)
        return web.json_response(exc.to_dict(), status=exc.http_status)


async def _payload(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidParameterError(message="Expected a JSON body") from exc
    if not isinstance(payload, dict):
        raise InvalidParameterError(message="Expected a JSON object body")
    return payload


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidParameterError(message=f"{key} is required")
    return value


def _optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidParameterError(message=f"{key} must be a string")
    return value


def _queue_snapshot(queue: asyncio.Queue[bytes | None], snapshot: bytes) -> None:
    """Put ``snapshot`` right after the ``connected`` frame, ahead of events queued while it loaded."""

    pending = [queue.get_nowait() for _ in range(queue.qsize())]
    for frame in pending[:1] + [snapshot] + pending[1:]:
        queue.put_nowait(frame)


def register_routes(app: web.Application, *, ctx: AppContext) -> None:
    """Register every API route on ``app``."""

    def source_of(request: web.Request):
        return coerce_source(request.headers.get("X-Source"))

    # ------------------------------------------------------------------
    # Agent chat
    # ------------------------------------------------------------------
    async def handle_agent_chat(request: web.Request) -> web.StreamResponse:
        payload = await _payload(request)
        persona_id = _required_str(payload, "personaId")
        message = _required_str(payload, "message")
        persona = await ctx.editor.get_persona(persona_id)
        session = await ctx.sessions.current_session(persona)

        run = ctx.new_agent_loop().start(session, persona_id, message)
        ctx.track(run.task)

        ndjson = request.query.get("format") == "ndjson"
        encode = encode_ndjson if ndjson else encode_sse
        response = web.StreamResponse(status=200, headers=_NDJSON_HEADERS if ndjson else _SSE_HEADERS)
        await response.prepare(request)
        LOGGER.info("Agent chat started for persona %s (session %s)", persona_id, session.id)
        try:
            async for event in run.events():
                await response.write(encode(event))
        except ConnectionResetError:
            LOGGER.info("Chat observer for persona %s disconnected; run continues", persona_id)
            return response
        await response.write_eof()
        return response

    async def handle_agent_clear(request: web.Request) -> web.Response:
        payload = await _payload(request)
        persona_id = _required_str(payload, "personaId")
        session = await ctx.sessions.clear(persona_id)
        return web.json_response({"sessionId": session.id})

    async def handle_agent_history(request: web.Request) -> web.Response:
        persona_id = (request.rel_url.query.get("personaId") or "").strip()
        if not persona_id:
            raise InvalidParameterError(message="personaId is required")
        turns = await ctx.sessions.history(persona_id)
        return web.json_response({"turns": [turn.to_dict() for turn in turns]})

    # ------------------------------------------------------------------
    # State sync
    # ------------------------------------------------------------------
    async def handle_state_stream(request: web.Request) -> web.StreamResponse:
        # subscribed before the snapshot loads, so changes made meanwhile are queued
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        subscription = ctx.broadcaster.subscribe(lambda event: queue.put_nowait(encode_sse(event)))
        ctx.stream_queues.add(queue)
        response = web.StreamResponse(status=200, headers=_SSE_HEADERS)
        try:
            initial = InitialStateEvent(
                personas=await ctx.editor.list_personas(),
                test_inputs=await ctx.editor.list_test_inputs(),
                results=await ctx.storage.list_results(),
            )
            _queue_snapshot(queue, encode_sse(initial))
            await response.prepare(request)
            LOGGER.info(
                "State stream %s connected (%d subscriber(s))",
                subscription.client_id,
                ctx.broadcaster.subscriber_count(),
            )
            while True:
                try:
                    frame = await asyncio.wait_for(queue.get(), timeout=ctx.settings.keepalive_seconds)
                except asyncio.TimeoutError:
                    frame = SSE_KEEPALIVE
                if frame is None:
                    break
                await response.write(frame)
        except ConnectionResetError:
            LOGGER.debug("State stream %s write failed", subscription.client_id)
        finally:
            subscription.unsubscribe()
            ctx.stream_queues.discard(queue)
            LOGGER.info(
                "State stream %s disconnected (%d subscriber(s))",
                subscription.client_id,
                ctx.broadcaster.subscriber_count(),
            )
        return response

    async def handle_changelog(request: web.Request) -> web.Response:
        since_id = request.rel_url.query.get("sinceId") or None
        entries = await ctx.changelog.entries(since_id)
        return web.json_response(
            {
                "entries": [entry.to_dict() for entry in entries],
                "latestId": await ctx.changelog.latest_id(),
            }
        )

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------
    async def handle_list_personas(request: web.Request) -> web.Response:
        personas = await ctx.editor.list_personas()
        return web.json_response({"personas": [persona.to_dict() for persona in personas]})

    async def handle_create_persona(request: web.Request) -> web.Response:
        payload = await _payload(request)
        persona = await ctx.editor.create_persona(
            _required_str(payload, "name"),
            _optional_str(payload, "instructions") or "",
            source=source_of(request),
        )
        return web.json_response(persona.to_dict(), status=201)

    async def handle_get_persona(request: web.Request) -> web.Response:
        persona = await ctx.editor.get_persona(request.match_info["persona_id"])
        return web.json_response(persona.to_dict())

    async def handle_update_persona(request: web.Request) -> web.Response:
        payload = await _payload(request)
        persona = await ctx.editor.update_persona(
            request.match_info["persona_id"],
            name=_optional_str(payload, "name"),
            instructions=_optional_str(payload, "instructions"),
            expected_version=parse_expected_version(payload),
            source=source_of(request),
        )
        return web.json_response(persona.to_dict())

    async def handle_create_linked_input(request: web.Request) -> web.Response:
        payload = await _payload(request)
        test_input = await ctx.editor.create_test_input(
            _required_str(payload, "content"),
            persona_id=request.match_info["persona_id"],
            expected_version=parse_expected_version(payload),
            source=source_of(request),
        )
        return web.json_response(test_input.to_dict(), status=201)

    async def handle_link_input(request: web.Request) -> web.Response:
        payload = await _payload(request)
        persona = await ctx.editor.link_test_input(
            request.match_info["persona_id"],
            request.match_info["test_input_id"],
            expected_version=parse_expected_version(payload),
            source=source_of(request),
        )
        return web.json_response(persona.to_dict())

    async def handle_unlink_input(request: web.Request) -> web.Response:
        version = request.rel_url.query.get("version")
        persona = await ctx.editor.unlink_test_input(
            request.match_info["persona_id"],
            request.match_info["test_input_id"],
            expected_version=parse_expected_version({"version": version}),
            source=source_of(request),
        )
        return web.json_response(persona.to_dict())

    async def handle_run_tests(request: web.Request) -> web.Response:
        persona_id = request.match_info["persona_id"]
        linked = await ctx.editor.linked_test_inputs(persona_id)
        ctx.spawn(ctx.runner.run_all(persona_id, source=source_of(request)))
        return web.json_response(
            {"status": "started", "testInputIds": [test_input.id for test_input in linked]},
            status=202,
        )

    # ------------------------------------------------------------------
    # Test inputs and results
    # ------------------------------------------------------------------
    async def handle_list_test_inputs(request: web.Request) -> web.Response:
        test_inputs = await ctx.editor.list_test_inputs()
        return web.json_response({"testInputs": [item.to_dict() for item in test_inputs]})

    async def handle_update_test_input(request: web.Request) -> web.Response:
        payload = await _payload(request)
        test_input = await ctx.editor.update_test_input(
            request.match_info["test_input_id"],
            _required_str(payload, "content"),
            source=source_of(request),
        )
        return web.json_response(test_input.to_dict())

    async def handle_delete_test_input(request: web.Request) -> web.Response:
        unlinked = await ctx.editor.delete_test_input(
            request.match_info["test_input_id"],
            source=source_of(request),
        )
        return web.json_response({"success": True, "unlinkedFrom": unlinked})

    async def handle_list_results(request: web.Request) -> web.Response:
        query = request.rel_url.query
        results = await ctx.storage.list_results(
            persona_id=query.get("personaId") or None,
            test_input_id=query.get("testInputId") or None,
        )
        return web.json_response({"results": [result.to_dict() for result in results]})

    app.router.add_post("/api/persona-agent/chat", handle_agent_chat)
    app.router.add_post("/api/persona-agent/clear", handle_agent_clear)
    app.router.add_get("/api/persona-agent/history", handle_agent_history)

    app.router.add_get("/api/state-stream", handle_state_stream)
    app.router.add_get("/api/changelog", handle_changelog)

    app.router.add_get("/api/personas", handle_list_personas)
    app.router.add_post("/api/personas", handle_create_persona)
    app.router.add_get("/api/personas/{persona_id}", handle_get_persona)
    app.router.add_put("/api/personas/{persona_id}", handle_update_persona)
    app.router.add_post("/api/personas/{persona_id}/test-inputs", handle_create_linked_input)
    app.router.add_post("/api/personas/{persona_id}/test-inputs/{test_input_id}/link", handle_link_input)
    app.router.add_delete("/api/personas/{persona_id}/test-inputs/{test_input_id}", handle_unlink_input)
    app.router.add_post("/api/personas/{persona_id}/run-tests", handle_run_tests)

    app.router.add_get("/api/test-inputs", handle_list_test_inputs)
    app.router.add_put("/api/test-inputs/{test_input_id}", handle_update_test_input)
    app.router.add_delete("/api/test-inputs/{test_input_id}", handle_delete_test_input)
    app.router.add_get("/api/test-results", handle_list_results)


def create_app(ctx: AppContext) -> web.Application:
    """Build the aiohttp application for ``ctx``."""

    app = web.Application(middlewares=[error_middleware])
    register_routes(app, ctx=ctx)
    app.on_shutdown.append(ctx.on_shutdown)
    app.on_cleanup.append(ctx.on_cleanup)
    return app
