import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

from agent_chat_client.errors import ApiError, StreamConnectionError
from agent_chat_client.events import encode_frame, parse_event
from agent_chat_client.models import format_timestamp

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def fixed_clock(now: datetime = NOW):
    return lambda: now


class MutableClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def agent_switch(agent_id: str = "agent-coordinator", role: str = "coordinator", name: str = "协调者") -> dict:
    return {"type": "agent-switch", "agentId": agent_id, "agentRole": role, "agentName": name}


def message_start(message_id: str, agent_id: str | None = None) -> dict:
    frame = {"type": "message-start", "messageId": message_id}
    if agent_id:
        frame["agentId"] = agent_id
    return frame


def text_delta(message_id: str, delta: str) -> dict:
    return {"type": "text-delta", "messageId": message_id, "delta": delta}


def tool_call(message_id: str, tool_call_id: str, name: str = "file_read", **overrides: Any) -> dict:
    call = {
        "id": tool_call_id,
        "name": name,
        "category": "file",
        "riskLevel": "low",
        "isLocal": True,
        "params": {"path": "src/App.tsx"},
        "status": "running",
    }
    call.update(overrides)
    return {"type": "tool-call", "messageId": message_id, "toolCall": call}


def tool_result(message_id: str, tool_call_id: str, result: str = "ok", status: str = "success") -> dict:
    return {
        "type": "tool-result",
        "messageId": message_id,
        "toolCallId": tool_call_id,
        "result": result,
        "status": status,
    }


def approval_request(
    message_id: str,
    approval_id: str,
    *,
    expires_at: datetime | None = None,
    status: str = "pending",
) -> dict:
    return {
        "type": "approval-request",
        "messageId": message_id,
        "approval": {
            "id": approval_id,
            "toolName": "git_push",
            "reason": "push to origin/main",
            "riskLevel": "high",
            "policySource": "high risk needs approval",
            "params": {"remote": "origin", "branch": "main"},
            "expiresAt": format_timestamp(expires_at or NOW + timedelta(minutes=30)),
            "status": status,
        },
    }


def message_end(message_id: str) -> dict:
    return {"type": "message-end", "messageId": message_id}


def done() -> dict:
    return {"type": "done"}


def error(message: str = "boom") -> dict:
    return {"type": "error", "message": message}


def events(*frames: dict) -> list:
    return [parse_event(frame) for frame in frames]


def body(*frames: dict) -> bytes:
    return b"".join(encode_frame(frame) for frame in frames)


class FakeOpener:
    """Serves a canned byte body as the turn stream.

    ``hang`` keeps the connection open after the body until cancelled;
    ``fail_with`` raises once the body is exhausted. ``close_delay`` holds the
    connection open for that many seconds while it shuts down.
    """

    def __init__(
        self,
        payload: bytes = b"",
        *,
        chunk_size: int | None = None,
        hang: bool = False,
        fail_with: BaseException | None = None,
        open_error: BaseException | None = None,
        close_delay: float = 0,
    ):
        self._payload = payload
        self._chunk_size = chunk_size or max(1, len(payload))
        self._hang = hang
        self._fail_with = fail_with
        self._open_error = open_error
        self._close_delay = close_delay
        self.requests: list[tuple[str, str]] = []
        self.closing = False
        self.closed = False

    @asynccontextmanager
    async def open_stream(self, session_id: str, content: str):
        self.requests.append((session_id, content))
        if self._open_error is not None:
            raise self._open_error
        try:
            yield self._chunks()
        finally:
            self.closing = True
            if self._close_delay:
                await asyncio.sleep(self._close_delay)
            self.closed = True

    async def _chunks(self):
        for i in range(0, len(self._payload), self._chunk_size):
            yield self._payload[i : i + self._chunk_size]
            await asyncio.sleep(0)
        if self._fail_with is not None:
            raise self._fail_with
        if self._hang:
            await asyncio.Event().wait()


def connection_drop() -> StreamConnectionError:
    return StreamConnectionError("Stream interrupted: connection reset")


class FakeSubmitter:
    def __init__(self, ack: dict | None = None, error: ApiError | None = None):
        self._ack = ack
        self._error = error
        self.calls: list[tuple[str, str]] = []

    async def submit_approval(self, approval_id: str, decision: str) -> dict:
        self.calls.append((approval_id, decision))
        if self._error is not None:
            raise self._error
        return self._ack if self._ack is not None else {}
