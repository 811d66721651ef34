from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from agent_chat_client.api_client import ChatApiClient
from agent_chat_client.approvals import ApprovalTracker
from agent_chat_client.assembler import MessageAssembler
from agent_chat_client.models import ApprovalRequest, Session
from agent_chat_client.tool_calls import ToolCallTracker
from agent_chat_client.transcript import TranscriptStore
from agent_chat_client.turn_driver import TurnDriver, TurnResult


class ChatSession:
    """Everything one open conversation needs, wired around a single transcript."""

    def __init__(
        self,
        session_id: str,
        client: ChatApiClient,
        *,
        countdown_tick_seconds: float = 1.0,
        reconcile_window_seconds: float = 120.0,
        on_countdown_tick: Callable[[ApprovalRequest, float], None] | None = None,
    ) -> None:
        self._client = client
        self._store = TranscriptStore(session_id, reconcile_window_seconds=reconcile_window_seconds)
        self._assembler = MessageAssembler(self._store)
        self._tool_calls = ToolCallTracker(self._store)
        self._approvals = ApprovalTracker(
            self._store,
            client,
            tick_seconds=countdown_tick_seconds,
            on_tick=on_countdown_tick,
        )
        self._driver = TurnDriver(self._assembler, client, approvals=self._approvals)

    @property
    def session_id(self) -> str:
        return self._store.session_id

    @property
    def store(self) -> TranscriptStore:
        return self._store

    @property
    def assembler(self) -> MessageAssembler:
        return self._assembler

    @property
    def tool_calls(self) -> ToolCallTracker:
        return self._tool_calls

    @property
    def approvals(self) -> ApprovalTracker:
        return self._approvals

    @property
    def driver(self) -> TurnDriver:
        return self._driver

    async def open(self) -> None:
        history = await self._client.fetch_messages(self.session_id)
        self._store.load_history(history)
        self._approvals.sync_countdowns()

    async def refresh_metadata(self) -> Session:
        return await self._client.get_session(self.session_id)

    async def send(self, text: str) -> TurnResult:
        return await self._driver.submit(text)

    def cancel(self) -> bool:
        return self._driver.cancel()

    async def approve(self, approval_id: str) -> ApprovalRequest:
        return await self._approvals.approve(approval_id)

    async def reject(self, approval_id: str) -> ApprovalRequest:
        return await self._approvals.reject(approval_id)

    async def close(self) -> None:
        self._driver.cancel()
        stopped = self._approvals.stop_countdowns()
        logger.debug(f"Session {self.session_id} closed ({stopped} countdown(s) stopped)")
