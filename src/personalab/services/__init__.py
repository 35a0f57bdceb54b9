"""Domain services: settings, mutation, change tracking and test runs."""

from .broadcaster import ChangeBroadcaster, Subscription
from .changelog import ChangeRecorder, Changelog, InMemoryChangelog, JsonChangelog
from .persona_editor import PersonaEditor, WritePolicy
from .settings import SecretVault, Settings, SettingsStore
from .test_runner import TestRunner

__all__ = [
    "ChangeBroadcaster",
    "ChangeRecorder",
    "Changelog",
    "InMemoryChangelog",
    "JsonChangelog",
    "PersonaEditor",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "Subscription",
    "TestRunner",
    "WritePolicy",
]
