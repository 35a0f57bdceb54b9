"""Tests for the tool error types."""

from __future__ import annotations

from personalab.ai.tools.errors import (
    AlreadyLinkedError,
    ErrorCode,
    InvalidParameterError,
    NotLinkedError,
    PersonaNotFoundError,
    StaleWriteError,
    TestInputNotFoundError,
    ToolError,
)


class TestToolError:
    def test_basic_error(self) -> None:
        error = ToolError(error_code="test_error", message="Something went wrong")

        assert str(error) == "Something went wrong"
        assert error.to_dict() == {"error": "test_error", "message": "Something went wrong"}
        assert error.http_status == 400

    def test_details_are_included(self) -> None:
        error = InvalidParameterError(message="name is required", details={"field": "name"})

        assert error.to_dict()["details"] == {"field": "name"}


class TestLookupErrors:
    def test_persona_not_found(self) -> None:
        error = PersonaNotFoundError(persona_id="p1")

        assert error.error_code == ErrorCode.PERSONA_NOT_FOUND
        assert error.message == "Persona not found"
        assert error.details == {"personaId": "p1"}
        assert error.http_status == 404

    def test_test_input_not_found(self) -> None:
        error = TestInputNotFoundError(test_input_id="t1")

        assert error.message == 'Test input with ID "t1" not found'
        assert error.http_status == 404


class TestConflictErrors:
    def test_link_state_messages(self) -> None:
        assert NotLinkedError(test_input_id="t1").message == 'Test input "t1" is not linked to this persona'
        assert AlreadyLinkedError(test_input_id="t1").message == 'Test input "t1" is already linked to this persona'
        assert NotLinkedError(test_input_id="t1").http_status == 409

    def test_stale_write(self) -> None:
        error = StaleWriteError(expected_version=2, current_version=3)

        assert "expected version 2, found 3" in error.message
        assert error.to_dict()["details"] == {"expectedVersion": 2, "currentVersion": 3}
        assert error.http_status == 409
