from __future__ import annotations

from agent_chat_client.models import ToolCall
from agent_chat_client.transcript import TranscriptStore


class ToolCallTracker:
    """Read-only view over the tool calls nested in a transcript."""

    def __init__(self, store: TranscriptStore):
        self._store = store

    def find(self, tool_call_id: str) -> ToolCall | None:
        return next((tc for tc in self._store.iter_tool_calls() if tc.id == tool_call_id), None)

    def is_terminal(self, entry: ToolCall) -> bool:
        return entry.is_terminal

    def all(self) -> list[ToolCall]:
        return list(self._store.iter_tool_calls())

    def for_message(self, message_id: str) -> list[ToolCall]:
        message = self._store.get(message_id)
        return list(message.tool_calls) if message is not None else []

    def running(self) -> list[ToolCall]:
        return [tc for tc in self._store.iter_tool_calls() if not tc.is_terminal]
