"""In-memory storage backend used by tests and ephemeral servers."""

from __future__ import annotations

from typing import Sequence

from ..ai.conversation.session import AgentSession
from ..core.ids import utcnow
from ..core.models import Persona, TestInput, TestResult

__all__ = ["InMemoryStorage"]


class InMemoryStorage:
    """Dict-backed storage; records are copied on the way in and out."""

    def __init__(self) -> None:
        self._personas: dict[str, Persona] = {}
        self._test_inputs: dict[str, TestInput] = {}
        self._sessions: dict[str, AgentSession] = {}
        self._results: dict[str, TestResult] = {}

    # ------------------------------------------------------------------
    # Personas
    # ------------------------------------------------------------------
    async def get_persona(self, persona_id: str) -> Persona | None:
        stored = self._personas.get(persona_id)
        return Persona.from_dict(stored.to_dict()) if stored else None

    async def list_personas(self) -> Sequence[Persona]:
        return [Persona.from_dict(item.to_dict()) for item in self._personas.values()]

    async def save_persona(self, persona: Persona) -> Persona:
        persona.version += 1
        persona.updated_at = utcnow()
        self._personas[persona.id] = Persona.from_dict(persona.to_dict())
        return persona

    async def delete_persona(self, persona_id: str) -> bool:
        return self._personas.pop(persona_id, None) is not None

    # ------------------------------------------------------------------
    # Test inputs
    # ------------------------------------------------------------------
    async def get_test_input(self, test_input_id: str) -> TestInput | None:
        stored = self._test_inputs.get(test_input_id)
        return TestInput.from_dict(stored.to_dict()) if stored else None

    async def list_test_inputs(self) -> Sequence[TestInput]:
        return [TestInput.from_dict(item.to_dict()) for item in self._test_inputs.values()]

    async def save_test_input(self, test_input: TestInput) -> TestInput:
        self._test_inputs[test_input.id] = TestInput.from_dict(test_input.to_dict())
        return test_input

    async def delete_test_input(self, test_input_id: str) -> bool:
        return self._test_inputs.pop(test_input_id, None) is not None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def get_session(self, session_id: str) -> AgentSession | None:
        stored = self._sessions.get(session_id)
        return AgentSession.from_dict(stored.to_dict()) if stored else None

    async def save_session(self, session: AgentSession) -> AgentSession:
        self._sessions[session.id] = AgentSession.from_dict(session.to_dict())
        return session

    async def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    # ------------------------------------------------------------------
    # Test results
    # ------------------------------------------------------------------
    async def get_result(self, result_id: str) -> TestResult | None:
        stored = self._results.get(result_id)
        return TestResult.from_dict(stored.to_dict()) if stored else None

    async def save_result(self, result: TestResult) -> TestResult:
        self._results[result.id] = TestResult.from_dict(result.to_dict())
        return result

    async def list_results(
        self, *, persona_id: str | None = None, test_input_id: str | None = None
    ) -> Sequence[TestResult]:
        return [
            TestResult.from_dict(item.to_dict())
            for item in self._results.values()
            if (persona_id is None or item.persona_id == persona_id)
            and (test_input_id is None or item.test_input_id == test_input_id)
        ]

    async def delete_results_for_input(self, test_input_id: str) -> int:
        doomed = [key for key, item in self._results.items() if item.test_input_id == test_input_id]
        for key in doomed:
            del self._results[key]
        return len(doomed)
