"""Lifecycle of the per-persona agent session."""

from __future__ import annotations

import logging

from ...core.models import Persona
from ...storage.base import SessionStorage
from ..conversation.session import AgentSession
from ..conversation.turns import Turn

__all__ = ["AgentSessionService"]

LOGGER = logging.getLogger(__name__)


class AgentSessionService:
    """Load, persist, clear and read agent sessions.

    A persona has at most one current session, referenced by
    ``Persona.agent_session_id``. Sessions are created lazily and only
    replaced by an explicit :meth:`clear`.
    """

    def __init__(self, sessions: SessionStorage, editor, changelog) -> None:
        self._sessions = sessions
        self._editor = editor
        self._changelog = changelog

    async def current_session(self, persona: Persona) -> AgentSession:
        """Return the persona's session, or a fresh unsaved one."""

        if persona.agent_session_id:
            session = await self._sessions.get_session(persona.agent_session_id)
            if session is not None:
                return session
            LOGGER.info(
                "Session %s for persona %s is gone; starting a new one",
                persona.agent_session_id,
                persona.id,
            )
        return AgentSession.create(persona.id)

    async def save(self, session: AgentSession) -> AgentSession:
        session.touch()
        return await self._sessions.save_session(session)

    async def attach(self, persona_id: str, session: AgentSession) -> Persona | None:
        return await self._editor.attach_session(persona_id, session.id)

    async def clear(self, persona_id: str) -> AgentSession:
        """Delete the current session and link a fresh, empty one.

        The new session starts reading the changelog from its current end.
        """

        persona = await self._editor.get_persona(persona_id)
        if persona.agent_session_id:
            await self._sessions.delete_session(persona.agent_session_id)
        session = AgentSession.create(persona_id)
        session.last_seen_changelog_id = await self._changelog.latest_id()
        await self.save(session)
        await self.attach(persona_id, session)
        LOGGER.info("Cleared agent session for persona %s (new session %s)", persona_id, session.id)
        return session

    async def history(self, persona_id: str) -> list[Turn]:
        persona = await self._editor.get_persona(persona_id)
        if not persona.agent_session_id:
            return []
        session = await self._sessions.get_session(persona.agent_session_id)
        return list(session.turns) if session is not None else []
