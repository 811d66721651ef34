from __future__ import annotations

import json
import sys
from collections.abc import Callable
from typing import Any, TextIO

from agent_chat_client.approvals import ApprovalTracker
from agent_chat_client.events import (
    AgentSwitch,
    ApprovalRequested,
    Done,
    MessageEnd,
    MessageStart,
    StreamError,
    TextDelta,
    ToolCallStarted,
    ToolResult,
)
from agent_chat_client.models import ApprovalRequest, Message, ToolCall
from agent_chat_client.transcript import TranscriptStore

_RISK_LABELS = {"low": "low risk", "medium": "medium risk", "high": "HIGH RISK", "critical": "CRITICAL"}


def _first_line(text: str | None, limit: int = 100) -> str:
    lines = (text or "").strip().splitlines()
    line = lines[0] if lines else ""
    return line if len(line) <= limit else line[: limit - 3] + "..."


def format_countdown(seconds: float) -> str:
    whole = max(0, int(seconds))
    return f"{whole // 60}:{whole % 60:02d}"


def format_tool_call(tool_call: ToolCall) -> str:
    where = "local" if tool_call.is_local else "remote"
    head = f"[tool] {tool_call.name} ({tool_call.category}, {_RISK_LABELS.get(tool_call.risk_level, tool_call.risk_level)}, {where})"
    if tool_call.status == "running":
        return f"{head} running..."
    if tool_call.status == "success":
        return f"{head} ok: {_first_line(tool_call.result)}"
    return f"{head} failed: {_first_line(tool_call.error_message)}"


def format_approval(approval: ApprovalRequest, status: str, remaining: float) -> list[str]:
    lines = [
        f"[approval required] {approval.tool_name} ({_RISK_LABELS.get(approval.risk_level, approval.risk_level)})",
        f"  reason: {approval.reason}",
        f"  policy: {approval.policy_source}",
        f"  params: {json.dumps(approval.params, ensure_ascii=False)}",
    ]
    if status == "pending":
        lines.append(f"  expires in {format_countdown(remaining)} - /approve {approval.id} or /reject {approval.id}")
    else:
        lines.append(f"  status: {status}")
    return lines


class ConsoleView:
    """Prints each fold of the transcript incrementally."""

    def __init__(
        self,
        approvals: ApprovalTracker,
        *,
        line_prefix: str = "assistant> ",
        out: TextIO | None = None,
    ) -> None:
        self._approvals = approvals
        self._line_prefix = line_prefix
        self._out = out or sys.stdout

    def attach(self, store: TranscriptStore) -> Callable[[], None]:
        return store.subscribe(self.on_fold)

    def on_fold(self, store: TranscriptStore, event: Any) -> None:
        if isinstance(event, AgentSwitch):
            self._write(f"\n--- {event.agent_name or event.agent_id} ({event.agent_role}) ---")
        elif isinstance(event, MessageStart):
            message = store.get(event.message_id)
            who = (message.agent_role or message.agent_id) if message else None
            label = f"[{who}] " if who else ""
            self._write(f"\n{self._line_prefix}{label}")
        elif isinstance(event, TextDelta):
            self._write(event.delta)
        elif isinstance(event, ToolCallStarted):
            self._write(f"\n  {format_tool_call(event.tool_call)}\n")
        elif isinstance(event, ToolResult):
            message = store.get(event.message_id)
            tool_call = message.find_tool_call(event.tool_call_id) if message else None
            if tool_call is not None:
                self._write(f"  {format_tool_call(tool_call)}\n")
        elif isinstance(event, ApprovalRequested):
            approval = self._approvals.find(event.approval.id)
            if approval is not None:
                self._write("\n" + "\n".join(self.approval_lines(approval)) + "\n")
        elif isinstance(event, MessageEnd):
            self._write("\n")
        elif isinstance(event, StreamError):
            self._write(f"\n{self._line_prefix}[error] {event.message}\n")
        elif isinstance(event, Done):
            self._write("\n")

    def approval_lines(self, approval: ApprovalRequest) -> list[str]:
        return format_approval(
            approval,
            self._approvals.effective_status(approval),
            self._approvals.remaining(approval),
        )

    def render_message(self, message: Message) -> str:
        if message.role == "user":
            head = "you> "
        else:
            who = message.agent_role or message.agent_id or message.role
            head = f"{self._line_prefix}[{who}] "
        lines = [head + message.content]
        lines += [f"  {format_tool_call(tc)}" for tc in message.tool_calls]
        if message.approval is not None:
            lines += self.approval_lines(message.approval)
        if message.status == "error":
            retry = " (retry available)" if message.retryable else ""
            lines.append(f"  [{message.error_kind}] {message.error_text or 'failed'}{retry}")
        return "\n".join(lines)

    def render_transcript(self, store: TranscriptStore) -> str:
        return "\n\n".join(self.render_message(m) for m in store)

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()
