"""System prompt construction for the persona editing agent."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from ...core.ids import utcnow
from ...core.models import ChangeSource, ChangelogEntry, Persona

__all__ = [
    "build_system_prompt",
    "format_changelog_for_prompt",
    "format_time_ago",
    "RECENT_CHANGES_HEADER",
]

RECENT_CHANGES_HEADER = "[RECENT CHANGES SINCE YOUR LAST TURN]"
_MAX_PROMPT_CHANGES = 50

_BASE_PROMPT = """You are an AI assistant helping to edit a persona for a multi-persona chat application.

## Project Context
Users create AI personas, each with its own instructions. When users chat, several personas can
respond to each message, giving different perspectives or specialized expertise.

## Your Role
You are helping the user edit a specific persona. You can:
- View and modify the persona's name
- View and modify the persona's instructions
- Manage test inputs (prompts used to check how the persona responds)
- Run tests to see how the persona responds to its test inputs

## Current Persona
ID: {persona_id}
Name: {persona_name}

## Guidelines
- Be concise; the user can see the changes you make in the UI
- When editing the instructions, preserve the user's intent and writing style
- Ask for clarification if the request is ambiguous
- After making changes, briefly confirm what you did
- Use tools to read and modify the persona data
- The user may edit the persona at the same time as you. Re-read it with get_persona before
  changing something you have not looked at recently.
- Test inputs are shared across personas. When removing one, prefer unlink_test_input (removes it
  from this persona only). Only use delete_test_input when the user explicitly wants it gone
  entirely, e.g. if they are unhappy with one you just created.
- After significant changes to the instructions, consider using run_test to verify the persona
  behaves as expected."""


def format_time_ago(timestamp: datetime, now: datetime | None = None) -> str:
    """Render ``timestamp`` relative to ``now`` in whole seconds/minutes/hours/days."""

    seconds = max(0, int(((now or utcnow()) - timestamp).total_seconds()))
    if seconds < 60:
        return f"{seconds} seconds ago"
    if seconds < 3600:
        return f"{seconds // 60} minutes ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"


def format_changelog_for_prompt(
    entries: Sequence[ChangelogEntry],
    *,
    now: datetime | None = None,
    limit: int = _MAX_PROMPT_CHANGES,
) -> str:
    """Render unseen changelog entries as a prompt section, or ``""`` if none."""

    if not entries:
        return ""
    shown = list(entries)[-limit:] if limit > 0 else list(entries)
    lines = []
    omitted = len(entries) - len(shown)
    if omitted:
        lines.append(f"- ({omitted} earlier changes omitted)")
    for entry in shown:
        source = "UI" if entry.source is ChangeSource.UI else "Agent"
        lines.append(f"- {format_time_ago(entry.timestamp, now)} ({source}): {entry.summary}")
    return f"\n\n{RECENT_CHANGES_HEADER}\n" + "\n".join(lines)


def build_system_prompt(persona: Persona, changelog_section: str = "") -> str:
    prompt = _BASE_PROMPT.format(persona_id=persona.id, persona_name=persona.name)
    return prompt + changelog_section
