"""Project a turn log into the role-batched message list a model expects."""

from __future__ import annotations

from typing import Any, Iterable

from .turns import AssistantTextTurn, ToolCallTurn, ToolResultTurn, Turn, UserTurn

__all__ = ["project"]


def project(turns: Iterable[Turn]) -> list[dict[str, Any]]:
    """Group adjacent same-role turns into single messages.

    Assistant text and tool calls share one ``assistant`` message; consecutive
    tool results share one ``user`` message. A user turn flushes both buffers
    and becomes a plain-string ``user`` message.
    """

    messages: list[dict[str, Any]] = []
    assistant_blocks: list[dict[str, Any]] = []
    result_blocks: list[dict[str, Any]] = []

    def flush_assistant() -> None:
        if assistant_blocks:
            messages.append({"role": "assistant", "content": list(assistant_blocks)})
            assistant_blocks.clear()

    def flush_results() -> None:
        if result_blocks:
            messages.append({"role": "user", "content": list(result_blocks)})
            result_blocks.clear()

    for turn in turns:
        if isinstance(turn, UserTurn):
            flush_assistant()
            flush_results()
            messages.append({"role": "user", "content": turn.content})
        elif isinstance(turn, AssistantTextTurn):
            flush_results()
            assistant_blocks.append({"type": "text", "text": turn.content})
        elif isinstance(turn, ToolCallTurn):
            flush_results()
            assistant_blocks.append(
                {
                    "type": "tool_use",
                    "id": turn.tool_invocation_id,
                    "name": turn.tool_name,
                    "input": dict(turn.input),
                }
            )
        elif isinstance(turn, ToolResultTurn):
            flush_assistant()
            result_blocks.append(
                {
                    "type": "tool_result",
                    "tool_use_id": turn.tool_invocation_id,
                    "content": turn.output,
                    "is_error": turn.is_error,
                }
            )

    flush_assistant()
    flush_results()
    return messages
