"""Persistence backends for personas, test inputs, sessions and results."""

from .base import PersonaStorage, SessionStorage, Storage, TestInputStorage, TestResultStorage
from .json_store import JsonStorage
from .memory import InMemoryStorage

__all__ = [
    "InMemoryStorage",
    "JsonStorage",
    "PersonaStorage",
    "SessionStorage",
    "Storage",
    "TestInputStorage",
    "TestResultStorage",
]
