"""Process-scoped wiring shared by the HTTP handlers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Coroutine

from ..ai.ai_types import ModelClient
from ..ai.client import AIClient, ClientSettings
from ..ai.orchestration.agent_loop import AgentLoop, AgentLoopConfig
from ..ai.orchestration.event_log import ChatEventLogger
from ..ai.orchestration.sessions import AgentSessionService
from ..ai.tools.dispatcher import ToolDispatcher
from ..ai.tools.persona_tools import build_persona_registry
from ..services.broadcaster import ChangeBroadcaster
from ..services.changelog import Changelog, ChangeRecorder, JsonChangelog
from ..services.persona_editor import PersonaEditor
from ..services.settings import Settings
from ..services.test_runner import TestRunner
from ..storage.base import Storage
from ..storage.json_store import JsonStorage

__all__ = ["AppContext", "build_context", "changelog_path"]

LOGGER = logging.getLogger(__name__)


def changelog_path(settings: Settings) -> Path:
    return Path(settings.data_dir).expanduser() / "changelog.json"


@dataclass(eq=False)
class AppContext:
    """Everything a request handler needs, built once per application."""

    settings: Settings
    storage: Storage
    changelog: Changelog
    broadcaster: ChangeBroadcaster
    recorder: ChangeRecorder
    editor: PersonaEditor
    runner: TestRunner
    dispatcher: ToolDispatcher
    sessions: AgentSessionService
    client: ModelClient
    event_logger: ChatEventLogger
    background_tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    stream_queues: set[asyncio.Queue[bytes | None]] = field(default_factory=set)

    def new_agent_loop(self) -> AgentLoop:
        """Return a loop for one chat invocation; state is per invocation."""

        return AgentLoop(
            client=self.client,
            dispatcher=self.dispatcher,
            changelog=self.changelog,
            sessions=self.sessions,
            editor=self.editor,
            event_logger=self.event_logger,
            config=AgentLoopConfig(
                max_tokens=self.settings.max_tokens,
                max_rounds=self.settings.max_rounds,
            ),
        )

    def track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        """Keep a reference to a background task until it finishes."""

        self.background_tasks.add(task)
        task.add_done_callback(self._task_finished)
        return task

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        return self.track(asyncio.create_task(coro))

    def _task_finished(self, task: asyncio.Task[Any]) -> None:
        self.background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Background task failed", exc_info=exc)

    async def on_shutdown(self, _app: Any = None) -> None:
        for queue in list(self.stream_queues):
            queue.put_nowait(None)
        pending = list(self.background_tasks)
        if pending:
            LOGGER.info("Cancelling %d background task(s)", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self.broadcaster.clear()

    async def on_cleanup(self, _app: Any = None) -> None:
        close = getattr(self.client, "aclose", None)
        if close is not None:
            await close()


def build_context(
    settings: Settings,
    *,
    storage: Storage | None = None,
    changelog: Changelog | None = None,
    client: ModelClient | None = None,
    event_logger: ChatEventLogger | None = None,
) -> AppContext:
    """Wire services from ``settings``, replacing any collaborator passed in."""

    storage = storage or JsonStorage(settings.data_dir)
    changelog = changelog or JsonChangelog(changelog_path(settings))
    if client is None:
        client = AIClient(
            ClientSettings(
                base_url=settings.base_url,
                api_key=settings.api_key,
                model=settings.model,
                request_timeout=settings.request_timeout,
                max_retries=settings.max_retries,
                retry_min_seconds=settings.retry_min_seconds,
                retry_max_seconds=settings.retry_max_seconds,
                debug_logging=settings.debug_logging,
            )
        )
    broadcaster = ChangeBroadcaster()
    recorder = ChangeRecorder(changelog, broadcaster)
    editor = PersonaEditor(
        personas=storage,
        test_inputs=storage,
        results=storage,
        broadcaster=broadcaster,
        recorder=recorder,
        write_policy=settings.write_policy,
    )
    runner = TestRunner(
        editor=editor,
        results=storage,
        client=client,
        broadcaster=broadcaster,
        recorder=recorder,
        max_tokens=settings.max_tokens,
    )
    dispatcher = ToolDispatcher(build_persona_registry(editor, runner))
    return AppContext(
        settings=settings,
        storage=storage,
        changelog=changelog,
        broadcaster=broadcaster,
        recorder=recorder,
        editor=editor,
        runner=runner,
        dispatcher=dispatcher,
        sessions=AgentSessionService(storage, editor, changelog),
        client=client,
        event_logger=event_logger or ChatEventLogger(enabled=settings.debug_event_logging),
    )
