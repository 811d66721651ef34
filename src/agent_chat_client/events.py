from __future__ import annotations

import codecs
import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from loguru import logger

from agent_chat_client.errors import ProtocolDecodeError
from agent_chat_client.models import ApprovalRequest, ToolCall, TOOL_TERMINAL_STATUSES


@dataclass(frozen=True)
class AgentSwitch:
    agent_id: str
    agent_role: str
    agent_name: str
    type: str = "agent-switch"


@dataclass(frozen=True)
class MessageStart:
    message_id: str
    agent_id: str | None = None
    type: str = "message-start"


@dataclass(frozen=True)
class TextDelta:
    message_id: str
    delta: str
    type: str = "text-delta"


@dataclass(frozen=True)
class ToolCallStarted:
    message_id: str
    tool_call: ToolCall
    type: str = "tool-call"


@dataclass(frozen=True)
class ToolResult:
    message_id: str
    tool_call_id: str
    result: str
    status: str
    type: str = "tool-result"


@dataclass(frozen=True)
class ApprovalRequested:
    message_id: str
    approval: ApprovalRequest
    type: str = "approval-request"


@dataclass(frozen=True)
class MessageEnd:
    message_id: str
    type: str = "message-end"


@dataclass(frozen=True)
class Done:
    type: str = "done"


@dataclass(frozen=True)
class StreamError:
    message: str
    type: str = "error"


StreamEvent = (
    AgentSwitch
    | MessageStart
    | TextDelta
    | ToolCallStarted
    | ToolResult
    | ApprovalRequested
    | MessageEnd
    | Done
    | StreamError
)


def _str_field(payload: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise ValueError(f"missing or invalid field {key!r}")
    return value


def _object_field(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise ValueError(f"field {key!r} must be an object")
    return value


def _agent_switch(p: dict[str, Any]) -> AgentSwitch:
    return AgentSwitch(
        agent_id=_str_field(p, "agentId"),
        agent_role=_str_field(p, "agentRole"),
        agent_name=str(p.get("agentName", "")),
    )


def _message_start(p: dict[str, Any]) -> MessageStart:
    agent_id = p.get("agentId")
    return MessageStart(message_id=_str_field(p, "messageId"), agent_id=agent_id if isinstance(agent_id, str) else None)


def _text_delta(p: dict[str, Any]) -> TextDelta:
    return TextDelta(message_id=_str_field(p, "messageId"), delta=_str_field(p, "delta", allow_empty=True))


def _tool_call(p: dict[str, Any]) -> ToolCallStarted:
    message_id = _str_field(p, "messageId")
    return ToolCallStarted(message_id=message_id, tool_call=ToolCall.from_wire(_object_field(p, "toolCall"), message_id))


def _tool_result(p: dict[str, Any]) -> ToolResult:
    status = _str_field(p, "status")
    if status not in TOOL_TERMINAL_STATUSES:
        raise ValueError(f"tool-result status must be success or error, got {status!r}")
    result = p.get("result", "")
    return ToolResult(
        message_id=_str_field(p, "messageId"),
        tool_call_id=_str_field(p, "toolCallId"),
        result="" if result is None else str(result),
        status=status,
    )


def _approval_request(p: dict[str, Any]) -> ApprovalRequested:
    message_id = _str_field(p, "messageId")
    return ApprovalRequested(
        message_id=message_id,
        approval=ApprovalRequest.from_wire(_object_field(p, "approval"), message_id),
    )


def _message_end(p: dict[str, Any]) -> MessageEnd:
    return MessageEnd(message_id=_str_field(p, "messageId"))


def _done(p: dict[str, Any]) -> Done:
    return Done()


def _error(p: dict[str, Any]) -> StreamError:
    return StreamError(message=str(p.get("message", "") or "stream error"))


_PARSERS = {
    "agent-switch": _agent_switch,
    "message-start": _message_start,
    "text-delta": _text_delta,
    "tool-call": _tool_call,
    "tool-result": _tool_result,
    "approval-request": _approval_request,
    "message-end": _message_end,
    "done": _done,
    "error": _error,
}


def parse_event(payload: object) -> StreamEvent:
    """Build a typed event from one decoded JSON frame."""
    if not isinstance(payload, dict):
        raise ProtocolDecodeError(f"Frame is not a JSON object: {type(payload).__name__}")
    event_type = payload.get("type")
    parser = _PARSERS.get(event_type) if isinstance(event_type, str) else None
    if parser is None:
        raise ProtocolDecodeError(f"Unknown event type: {event_type!r}")
    try:
        return parser(payload)
    except (ValueError, TypeError, KeyError) as ex:
        raise ProtocolDecodeError(f"Invalid {event_type} frame: {ex}") from ex


def parse_frame(line: str) -> StreamEvent | None:
    """Parse one text line. Returns None for separators and SSE comments."""
    text = line.strip()
    if not text or text.startswith(":"):
        return None
    if text.startswith("data:"):
        text = text[5:].strip()
        if not text:
            return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as ex:
        raise ProtocolDecodeError(f"Malformed frame: {ex.msg}", frame=line) from ex
    return parse_event(payload)


class FrameDecoder:
    """Incremental bytes-to-events decoder for one connection.

    Chunks may split lines and multi-byte characters anywhere; only complete
    lines are parsed.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._frames = 0

    @property
    def frames_decoded(self) -> int:
        return self._frames

    def feed(self, chunk: bytes) -> Iterator[StreamEvent]:
        """Buffer a chunk and return its complete frames as a lazy iterator.

        Frames are parsed one at a time as the caller consumes them, so a
        malformed frame raises only after every frame before it was handed out.
        """
        try:
            self._buffer += self._decoder.decode(chunk)
        except UnicodeDecodeError as ex:
            raise ProtocolDecodeError(f"Invalid UTF-8 in stream: {ex.reason}") from ex
        *lines, self._buffer = self._buffer.split("\n")
        return self._iter_lines(lines)

    def flush(self) -> Iterator[StreamEvent]:
        """Parse whatever remains once the connection has closed."""
        try:
            self._buffer += self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as ex:
            raise ProtocolDecodeError(f"Truncated UTF-8 at end of stream: {ex.reason}") from ex
        remaining, self._buffer = self._buffer, ""
        return self._iter_lines([remaining])

    def _iter_lines(self, lines: list[str]) -> Iterator[StreamEvent]:
        for line in lines:
            event = parse_frame(line)
            if event is None:
                continue
            self._frames += 1
            logger.trace(f"Frame #{self._frames}: {event.type}")
            yield event


def encode_frame(payload: dict[str, Any], *, sse: bool = True) -> bytes:
    body = json.dumps(payload, ensure_ascii=False)
    if sse:
        return f"data: {body}\n\n".encode()
    return f"{body}\n".encode()
