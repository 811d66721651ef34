from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import uuid4

from loguru import logger

from agent_chat_client.approvals import ApprovalTracker
from agent_chat_client.assembler import STREAM_DONE, MessageAssembler
from agent_chat_client.errors import (
    ChatClientError,
    ProtocolDecodeError,
    StreamConnectionError,
    TurnCancelledError,
    TurnInProgressError,
)
from agent_chat_client.events import FrameDecoder, StreamEvent
from agent_chat_client.models import (
    ERROR_KIND_CANCELLED,
    ERROR_KIND_CONNECTION,
    ERROR_KIND_PROTOCOL,
    ROLE_USER,
    Message,
    utc_now,
)

TURN_IDLE = "idle"
TURN_CONNECTING = "connecting"
TURN_STREAMING = "streaming"
TURN_CLOSED = "closed"

OUTCOME_DONE = "done"
OUTCOME_ERROR = "error"
OUTCOME_CANCELLED = "cancelled"


@runtime_checkable
class StreamOpener(Protocol):
    def open_stream(self, session_id: str, content: str) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...


@dataclass(frozen=True)
class TurnResult:
    outcome: str
    user_message_id: str
    error: ChatClientError | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_DONE


class TurnDriver:
    """Runs one streaming turn at a time for a session."""

    def __init__(
        self,
        assembler: MessageAssembler,
        opener: StreamOpener,
        *,
        approvals: ApprovalTracker | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._assembler = assembler
        self._store = assembler.store
        self._opener = opener
        self._approvals = approvals
        self._clock = clock
        self._state = TURN_IDLE
        self._outcome: str | None = None
        self._task: asyncio.Task | None = None
        self._cancel_requested = False

    @property
    def state(self) -> str:
        return self._state

    @property
    def outcome(self) -> str | None:
        return self._outcome

    @property
    def is_busy(self) -> bool:
        return self._state in (TURN_CONNECTING, TURN_STREAMING)

    async def submit(self, text: str) -> TurnResult:
        if self.is_busy:
            raise TurnInProgressError(f"A turn is already {self._state} for session {self._store.session_id}")
        if not text.strip():
            raise ValueError("Cannot submit an empty message")

        user_message = Message(
            id=f"local-{uuid4().hex}",
            session_id=self._store.session_id,
            role=ROLE_USER,
            content=text,
            status="sent",
            created_at=self._clock(),
            optimistic=True,
        )
        self._store.add(user_message)
        self._store.notify(None)

        self._assembler.begin_turn()
        self._state = TURN_CONNECTING
        self._outcome = None
        self._cancel_requested = False
        self._task = asyncio.create_task(self._stream(text))
        logger.info(f"Turn submitted for session {self._store.session_id}")

        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                self._close(OUTCOME_CANCELLED, ERROR_KIND_CANCELLED, "turn task cancelled")
                raise
            return TurnResult(OUTCOME_CANCELLED, user_message.id, TurnCancelledError("Turn cancelled by user"))
        except ProtocolDecodeError as ex:
            logger.warning(f"Closing stream after undecodable frame: {ex}")
            self._close(OUTCOME_ERROR, ERROR_KIND_PROTOCOL, str(ex))
            return TurnResult(OUTCOME_ERROR, user_message.id, ex)
        except StreamConnectionError as ex:
            logger.error(f"Stream connection failed: {ex}")
            self._close(OUTCOME_ERROR, ERROR_KIND_CONNECTION, str(ex))
            return TurnResult(OUTCOME_ERROR, user_message.id, ex)
        except Exception as ex:
            logger.error(f"Turn aborted by unexpected error: {type(ex).__name__}: {ex}")
            self._close(OUTCOME_ERROR, ERROR_KIND_CONNECTION, str(ex))
            error = ChatClientError(f"Turn failed: {ex}")
            error.__cause__ = ex
            return TurnResult(OUTCOME_ERROR, user_message.id, error)
        finally:
            self._task = None

        if self._cancel_requested:
            return TurnResult(OUTCOME_CANCELLED, user_message.id, TurnCancelledError("Turn cancelled by user"))

        if self._assembler.stream_state == STREAM_DONE:
            leftover = self._store.finalize_open(ERROR_KIND_PROTOCOL, "stream finished without message-end")
            if leftover:
                self._store.notify(None)
            self._state = TURN_CLOSED
            self._outcome = OUTCOME_DONE
            logger.info(f"Turn done for session {self._store.session_id}")
            return TurnResult(OUTCOME_DONE, user_message.id)

        self._state = TURN_CLOSED
        self._outcome = OUTCOME_ERROR
        return TurnResult(
            OUTCOME_ERROR,
            user_message.id,
            ChatClientError(f"Server reported error: {self._assembler.failure}"),
        )

    def cancel(self) -> bool:
        """Abort the running turn without waiting for the server. Returns False when idle."""
        if not self.is_busy:
            return False
        if self._assembler.is_closed or (self._task is not None and self._task.done()):
            # the stream already reached done or error; submit reports that outcome
            return False
        self._cancel_requested = True
        if self._task is not None:
            self._task.cancel()
        self._close(OUTCOME_CANCELLED, ERROR_KIND_CANCELLED, "cancelled by user")
        logger.info(f"Turn cancelled for session {self._store.session_id}")
        return True

    async def _stream(self, text: str) -> None:
        decoder = FrameDecoder()
        async with self._opener.open_stream(self._store.session_id, text) as chunks:
            self._state = TURN_STREAMING
            async for chunk in chunks:
                if self._apply_all(decoder.feed(chunk)):
                    return
            if self._apply_all(decoder.flush()):
                return
        raise StreamConnectionError("Stream ended before a done or error event")

    def _apply_all(self, events: Iterable[StreamEvent]) -> bool:
        for event in events:
            self._assembler.apply(event)
            if self._approvals is not None:
                self._approvals.sync_countdowns()
            if self._assembler.is_closed:
                return True
        return False

    def _close(self, outcome: str, kind: str, text: str) -> None:
        self._state = TURN_CLOSED
        self._outcome = outcome
        self._assembler.close(kind, text)
        if outcome == OUTCOME_CANCELLED and self._approvals is not None:
            self._approvals.stop_countdowns()
