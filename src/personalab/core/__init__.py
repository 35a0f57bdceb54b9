"""Core domain types and utilities.

Records here are shared by storage, services, the agent tools and the HTTP
surface; none of them perform I/O.
"""

from .ids import generate_id, utcnow
from .models import (
    ChangeSource,
    ChangelogAction,
    ChangelogEntry,
    Persona,
    TestInput,
    TestResult,
    TestResultStatus,
)

__all__ = [
    "ChangeSource",
    "ChangelogAction",
    "ChangelogEntry",
    "Persona",
    "TestInput",
    "TestResult",
    "TestResultStatus",
    "generate_id",
    "utcnow",
]
