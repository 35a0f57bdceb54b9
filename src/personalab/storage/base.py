"""Storage protocols for the records the service persists."""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from ..ai.conversation.session import AgentSession
from ..core.models import Persona, TestInput, TestResult

__all__ = [
    "PersonaStorage",
    "TestInputStorage",
    "SessionStorage",
    "TestResultStorage",
    "Storage",
]


@runtime_checkable
class PersonaStorage(Protocol):
    """Persona persistence.

    ``save_persona`` increments ``version``, refreshes ``updated_at`` on the
    instance it is given and returns it.
    """

    async def get_persona(self, persona_id: str) -> Persona | None:
        ...

    async def list_personas(self) -> Sequence[Persona]:
        ...

    async def save_persona(self, persona: Persona) -> Persona:
        ...

    async def delete_persona(self, persona_id: str) -> bool:
        ...


@runtime_checkable
class TestInputStorage(Protocol):
    async def get_test_input(self, test_input_id: str) -> TestInput | None:
        ...

    async def list_test_inputs(self) -> Sequence[TestInput]:
        ...

    async def save_test_input(self, test_input: TestInput) -> TestInput:
        ...

    async def delete_test_input(self, test_input_id: str) -> bool:
        ...


@runtime_checkable
class SessionStorage(Protocol):
    async def get_session(self, session_id: str) -> AgentSession | None:
        ...

    async def save_session(self, session: AgentSession) -> AgentSession:
        ...

    async def delete_session(self, session_id: str) -> bool:
        ...


@runtime_checkable
class TestResultStorage(Protocol):
    async def get_result(self, result_id: str) -> TestResult | None:
        ...

    async def save_result(self, result: TestResult) -> TestResult:
        ...

    async def list_results(
        self, *, persona_id: str | None = None, test_input_id: str | None = None
    ) -> Sequence[TestResult]:
        """Return matching results ordered oldest first."""
        ...

    async def delete_results_for_input(self, test_input_id: str) -> int:
        ...


class Storage(PersonaStorage, TestInputStorage, SessionStorage, TestResultStorage, Protocol):
    """Convenience protocol for a backend implementing every record kind."""
