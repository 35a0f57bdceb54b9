"""Agent orchestration: the loop, its prompts, sessions and debug event logs."""

from .agent_loop import AgentLoop, AgentLoopConfig, AgentRun, LoopEvent, LoopState, RoundLimitExceeded
from .event_log import ChatEventLogger
from .prompts import build_system_prompt, format_changelog_for_prompt, format_time_ago
from .sessions import AgentSessionService

__all__ = [
    "AgentLoop",
    "AgentLoopConfig",
    "AgentRun",
    "AgentSessionService",
    "ChatEventLogger",
    "LoopEvent",
    "LoopState",
    "RoundLimitExceeded",
    "build_system_prompt",
    "format_changelog_for_prompt",
    "format_time_ago",
]
