"""Error types raised by persona tools and the mutation services behind them.

The dispatcher converts every :class:`ToolError` into an error tool result
carrying ``message``; HTTP handlers map them onto status codes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorCode",
    "ToolError",
    "PersonaNotFoundError",
    "TestInputNotFoundError",
    "NotLinkedError",
    "AlreadyLinkedError",
    "InvalidParameterError",
    "StaleWriteError",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool responses."""

    PERSONA_NOT_FOUND = "persona_not_found"
    TEST_INPUT_NOT_FOUND = "test_input_not_found"
    NOT_LINKED = "not_linked"
    ALREADY_LINKED = "already_linked"
    INVALID_PARAMETER = "invalid_parameter"
    STALE_WRITE = "stale_write"
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for all tool errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description, fed back to the model.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    # HTTP status used when the error escapes through a route handler
    http_status: ClassVar[int] = 400

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for JSON responses."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


# -----------------------------------------------------------------------------
# Lookup Errors
# -----------------------------------------------------------------------------

@dataclass
class PersonaNotFoundError(ToolError):
    error_code: str = field(default=ErrorCode.PERSONA_NOT_FOUND)
    message: str = field(default="Persona not found")
    details: dict[str, Any] = field(default_factory=dict)
    persona_id: str = field(default="")

    http_status: ClassVar[int] = 404

    def __post_init__(self) -> None:
        if self.persona_id:
            self.details.setdefault("personaId", self.persona_id)
        super().__post_init__()


@dataclass
class TestInputNotFoundError(ToolError):
    __test__ = False

    error_code: str = field(default=ErrorCode.TEST_INPUT_NOT_FOUND)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    test_input_id: str = field(default="")

    http_status: ClassVar[int] = 404

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'Test input with ID "{self.test_input_id}" not found'
        super().__post_init__()


# -----------------------------------------------------------------------------
# Link State Errors
# -----------------------------------------------------------------------------

@dataclass
class NotLinkedError(ToolError):
    """Raised by unlink when the persona never referenced the input."""

    error_code: str = field(default=ErrorCode.NOT_LINKED)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    test_input_id: str = field(default="")

    http_status: ClassVar[int] = 409

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'Test input "{self.test_input_id}" is not linked to this persona'
        super().__post_init__()


@dataclass
class AlreadyLinkedError(ToolError):
    error_code: str = field(default=ErrorCode.ALREADY_LINKED)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    test_input_id: str = field(default="")

    http_status: ClassVar[int] = 409

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'Test input "{self.test_input_id}" is already linked to this persona'
        super().__post_init__()


# -----------------------------------------------------------------------------
# Parameter / Concurrency Errors
# -----------------------------------------------------------------------------

@dataclass
class InvalidParameterError(ToolError):
    error_code: str = field(default=ErrorCode.INVALID_PARAMETER)
    message: str = field(default="Invalid parameter")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class StaleWriteError(ToolError):
    """Raised under the reject-stale write policy when the persona moved on."""

    error_code: str = field(default=ErrorCode.STALE_WRITE)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    expected_version: int = field(default=0)
    current_version: int = field(default=0)

    http_status: ClassVar[int] = 409

    def __post_init__(self) -> None:
        if not self.message:
            self.message = (
                "Persona was modified concurrently "
                f"(expected version {self.expected_version}, found {self.current_version}); "
                "re-read it and retry"
            )
        self.details.setdefault("expectedVersion", self.expected_version)
        self.details.setdefault("currentVersion", self.current_version)
        super().__post_init__()
