from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import assert_never

from loguru import logger

from agent_chat_client.errors import ChatClientError, ProtocolViolationError, UnknownReferenceError
from agent_chat_client.events import (
    AgentSwitch,
    ApprovalRequested,
    Done,
    MessageEnd,
    MessageStart,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallStarted,
    ToolResult,
)
from agent_chat_client.models import ERROR_KIND_STREAM, ROLE_ASSISTANT, Message, utc_now
from agent_chat_client.transcript import TranscriptStore

STREAM_IDLE = "idle"
STREAM_OPEN = "open"
STREAM_DONE = "done"
STREAM_FAILED = "failed"


@dataclass(frozen=True)
class AgentContext:
    agent_id: str
    agent_role: str | None = None
    agent_name: str | None = None


class MessageAssembler:
    """Folds stream events, in arrival order, into one session's transcript.

    Events that reference unknown ids or break a transition rule are dropped
    and recorded in ``warnings``; they never abort the fold.
    """

    def __init__(self, store: TranscriptStore):
        self._store = store
        self._agent: AgentContext | None = None
        self._known_agents: dict[str, AgentContext] = {}
        self._stream_state = STREAM_IDLE
        self._failure: str | None = None
        self._warnings: list[ChatClientError] = []

    @property
    def store(self) -> TranscriptStore:
        return self._store

    @property
    def current_agent(self) -> AgentContext | None:
        return self._agent

    @property
    def stream_state(self) -> str:
        return self._stream_state

    @property
    def is_closed(self) -> bool:
        return self._stream_state in (STREAM_DONE, STREAM_FAILED)

    @property
    def failure(self) -> str | None:
        return self._failure

    @property
    def warnings(self) -> list[ChatClientError]:
        return list(self._warnings)

    def begin_turn(self) -> None:
        self._agent = None
        self._stream_state = STREAM_IDLE
        self._failure = None

    def close(self, kind: str, text: str | None = None) -> list[Message]:
        """Close the stream from the client side; open messages become errors."""
        if not self.is_closed:
            self._stream_state = STREAM_FAILED
            self._failure = text or kind
        finalized = self._store.finalize_open(kind, text)
        self._store.notify(None)
        return finalized

    def apply(self, event: StreamEvent) -> TranscriptStore:
        if self.is_closed:
            self._violation(event.type, None, f"stream already {self._stream_state}")
            return self._store
        self._stream_state = STREAM_OPEN

        if isinstance(event, AgentSwitch):
            self._on_agent_switch(event)
        elif isinstance(event, MessageStart):
            self._on_message_start(event)
        elif isinstance(event, TextDelta):
            self._on_text_delta(event)
        elif isinstance(event, ToolCallStarted):
            self._on_tool_call(event)
        elif isinstance(event, ToolResult):
            self._on_tool_result(event)
        elif isinstance(event, ApprovalRequested):
            self._on_approval_request(event)
        elif isinstance(event, MessageEnd):
            self._on_message_end(event)
        elif isinstance(event, Done):
            self._stream_state = STREAM_DONE
            logger.debug("Stream done")
        elif isinstance(event, StreamError):
            self._on_error(event)
        else:
            assert_never(event)

        self._store.notify(event)
        return self._store

    def _on_agent_switch(self, event: AgentSwitch) -> None:
        context = AgentContext(event.agent_id, event.agent_role, event.agent_name or None)
        self._agent = context
        self._known_agents[event.agent_id] = context
        logger.debug(f"Agent switch: {event.agent_id} ({event.agent_role})")

    def _on_message_start(self, event: MessageStart) -> None:
        if event.message_id in self._store:
            self._violation(event.type, event.message_id, "message id already present")
            return

        agent = self._agent
        if event.agent_id and (agent is None or agent.agent_id != event.agent_id):
            agent = self._known_agents.get(event.agent_id, AgentContext(event.agent_id))
        self._store.add(
            Message(
                id=event.message_id,
                session_id=self._store.session_id,
                role=ROLE_ASSISTANT,
                status="streaming",
                created_at=utc_now(),
                agent_id=agent.agent_id if agent else None,
                agent_role=agent.agent_role if agent else None,
                agent_name=agent.agent_name if agent else None,
            )
        )

    def _on_text_delta(self, event: TextDelta) -> None:
        message = self._open_message(event.type, event.message_id)
        if message is not None:
            message.content += event.delta

    def _on_tool_call(self, event: ToolCallStarted) -> None:
        message = self._open_message(event.type, event.message_id)
        if message is None:
            return
        if message.find_tool_call(event.tool_call.id) is not None:
            self._violation(event.type, event.tool_call.id, "tool call id already present")
            return
        message.tool_calls.append(
            dataclasses.replace(
                event.tool_call,
                message_id=message.id,
                params=dict(event.tool_call.params),
                status="running",
                result=None,
                error_message=None,
            )
        )

    def _on_tool_result(self, event: ToolResult) -> None:
        message = self._store.get(event.message_id)
        if message is None:
            self._unknown(event.type, event.message_id, "message")
            return
        tool_call = message.find_tool_call(event.tool_call_id)
        if tool_call is None:
            self._unknown(event.type, event.tool_call_id, "tool call")
            return
        if not tool_call.complete(event.status, event.result):
            logger.debug(f"Ignoring repeated result for terminal tool call {tool_call.id} ({tool_call.status})")

    def _on_approval_request(self, event: ApprovalRequested) -> None:
        message = self._store.get(event.message_id)
        if message is None:
            self._unknown(event.type, event.message_id, "message")
            return

        incoming = event.approval
        existing = message.approval
        if existing is None:
            message.approval = dataclasses.replace(
                incoming, message_id=message.id, params=dict(incoming.params), status="pending"
            )
            logger.info(f"Approval requested: {incoming.id} ({incoming.tool_name}, {incoming.risk_level})")
            return

        if existing.id == incoming.id and incoming.is_terminal:
            if existing.transition(incoming.status):
                logger.info(f"Approval {existing.id} resolved by server: {existing.status}")
            return
        if existing.id == incoming.id:
            logger.debug(f"Ignoring repeated approval request {incoming.id}")
            return
        self._violation(event.type, incoming.id, f"message {message.id} already has approval {existing.id}")

    def _on_message_end(self, event: MessageEnd) -> None:
        message = self._open_message(event.type, event.message_id)
        if message is not None:
            message.status = "sent"

    def _on_error(self, event: StreamError) -> None:
        self._stream_state = STREAM_FAILED
        self._failure = event.message
        logger.warning(f"Stream reported error: {event.message}")
        self._store.finalize_open(ERROR_KIND_STREAM, event.message)

    def _open_message(self, event_type: str, message_id: str) -> Message | None:
        message = self._store.get(message_id)
        if message is None:
            self._unknown(event_type, message_id, "message")
            return None
        if not message.is_open:
            self._violation(event_type, message_id, f"message is {message.status}, not streaming")
            return None
        return message

    def _unknown(self, event_type: str, reference_id: str, kind: str) -> None:
        warning = UnknownReferenceError(
            f"{event_type} references unknown {kind} {reference_id!r}",
            event_type=event_type,
            reference_id=reference_id,
        )
        self._warnings.append(warning)
        logger.warning(f"Dropped event: {warning}")

    def _violation(self, event_type: str, reference_id: str | None, reason: str) -> None:
        warning = ProtocolViolationError(
            f"{event_type} dropped: {reason}",
            event_type=event_type,
            reference_id=reference_id,
        )
        self._warnings.append(warning)
        logger.warning(f"Dropped event: {warning}")
