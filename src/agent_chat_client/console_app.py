from __future__ import annotations

from loguru import logger

from agent_chat_client.chat_session import ChatSession
from agent_chat_client.commands.router import CommandRouter
from agent_chat_client.console_view import ConsoleView, format_countdown
from agent_chat_client.errors import ApiError, ApprovalDecisionError, TurnInProgressError
from agent_chat_client.turn_driver import OUTCOME_CANCELLED, OUTCOME_DONE


class ChatConsole:
    _LINE_PREFIX = "assistant> "

    def __init__(self, session: ChatSession, view: ConsoleView | None = None):
        self._session = session
        self._view = view or ConsoleView(session.approvals, line_prefix=self._LINE_PREFIX)
        self._detach = self._view.attach(session.store)
        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_approve=self._on_approve,
            on_reject=self._on_reject,
            on_approvals=self._on_approvals,
            on_history=self._on_history,
            on_session=self._on_session,
            on_unknown=self._on_unknown_command,
        )

    @property
    def session(self) -> ChatSession:
        return self._session

    def cancel_turn(self) -> None:
        if self._session.cancel():
            print(f"\n{self._LINE_PREFIX}[turn cancelled]")

    async def run(self, user_message: str) -> None:
        if await self._command_router.try_handle(user_message):
            return
        try:
            result = await self._session.send(user_message)
        except TurnInProgressError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return

        if result.outcome == OUTCOME_DONE:
            return
        if result.outcome == OUTCOME_CANCELLED:
            logger.info("Turn ended by user cancellation")
            return
        print(f"\n{self._LINE_PREFIX}[turn failed] {result.error} - send the message again to retry")

    def close(self) -> None:
        self._detach()

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /approve <approval_id>")
        print(f"{self._LINE_PREFIX}- /reject <approval_id>")
        print(f"{self._LINE_PREFIX}- /approvals")
        print(f"{self._LINE_PREFIX}- /history")
        print(f"{self._LINE_PREFIX}- /session")
        print(f"{self._LINE_PREFIX}Press Ctrl-C during a reply to cancel the turn.")

    async def _on_approve(self, approval_id: str) -> None:
        await self._decide(approval_id, "approved")

    async def _on_reject(self, approval_id: str) -> None:
        await self._decide(approval_id, "rejected")

    async def _decide(self, approval_id: str, outcome: str) -> None:
        try:
            approval = await self._session.approvals.decide(approval_id, outcome)
        except ApprovalDecisionError as ex:
            print(f"{self._LINE_PREFIX}Decision not accepted by server: {ex}")
            return
        except (ValueError, RuntimeError) as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return
        print(f"{self._LINE_PREFIX}Approval {approval.id} ({approval.tool_name}): {approval.status}")

    async def _on_approvals(self) -> None:
        approvals = self._session.approvals.all()
        if not approvals:
            print(f"{self._LINE_PREFIX}No approval requests in this session.")
            return
        for approval in approvals:
            status = self._session.approvals.effective_status(approval)
            countdown = self._session.approvals.countdown(approval.id)
            remaining = countdown.remaining_seconds if countdown else self._session.approvals.remaining(approval)
            suffix = f" (expires in {format_countdown(remaining)})" if status == "pending" else ""
            print(f"{self._LINE_PREFIX}- {approval.id} {approval.tool_name} [{approval.risk_level}] {status}{suffix}")

    async def _on_history(self) -> None:
        rendered = self._view.render_transcript(self._session.store)
        print(rendered or f"{self._LINE_PREFIX}No messages yet.")

    async def _on_session(self) -> None:
        try:
            meta = await self._session.refresh_metadata()
        except ApiError as ex:
            print(f"{self._LINE_PREFIX}Session metadata unavailable: {ex}")
            return
        last = meta.last_message_at.isoformat(timespec="seconds") if meta.last_message_at else "never"
        print(
            f"{self._LINE_PREFIX}Session {meta.id} \"{meta.title}\" [{meta.status}] "
            f"messages={meta.message_count} last={last} local={len(self._session.store)}"
        )

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")
