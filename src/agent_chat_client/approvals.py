from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from agent_chat_client.errors import ApiError, ApprovalDecisionError
from agent_chat_client.models import APPROVAL_TERMINAL_STATUSES, ApprovalRequest, utc_now
from agent_chat_client.transcript import TranscriptStore

_DECISION_VERBS = {"approved": "approve", "rejected": "reject"}


@runtime_checkable
class DecisionSubmitter(Protocol):
    async def submit_approval(self, approval_id: str, decision: str) -> dict[str, Any]:
        """Forward "approve" or "reject"; returns the server acknowledgement."""
        ...


class ApprovalCountdown:
    """Ticks a locally rendered remaining-time value for one approval.

    Never writes to the transcript. Stops on its own when the approval turns
    terminal or the remaining time reaches zero.
    """

    def __init__(
        self,
        approval: ApprovalRequest,
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        on_tick: Callable[[ApprovalRequest, float], None] | None = None,
    ) -> None:
        self._approval = approval
        self._tick_seconds = max(0.01, tick_seconds)
        self._clock = clock
        self._on_tick = on_tick
        self._remaining = approval.remaining_seconds(clock())
        self._task: asyncio.Task | None = None

    @property
    def approval_id(self) -> str:
        return self._approval.id

    @property
    def remaining_seconds(self) -> float:
        return self._remaining

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def _run(self) -> None:
        while True:
            self._remaining = self._approval.remaining_seconds(self._clock())
            if self._on_tick is not None:
                self._on_tick(self._approval, self._remaining)
            if self._approval.is_terminal or self._remaining <= 0:
                return
            await asyncio.sleep(self._tick_seconds)


class ApprovalTracker:
    def __init__(
        self,
        store: TranscriptStore,
        submitter: DecisionSubmitter | None = None,
        *,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        on_tick: Callable[[ApprovalRequest, float], None] | None = None,
    ) -> None:
        self._store = store
        self._submitter = submitter
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._on_tick = on_tick
        self._countdowns: dict[str, ApprovalCountdown] = {}

    def find(self, approval_id: str) -> ApprovalRequest | None:
        return next((a for a in self._store.iter_approvals() if a.id == approval_id), None)

    def is_terminal(self, entry: ApprovalRequest) -> bool:
        return entry.is_terminal

    def all(self) -> list[ApprovalRequest]:
        return list(self._store.iter_approvals())

    def pending(self) -> list[ApprovalRequest]:
        return [a for a in self._store.iter_approvals() if a.status == "pending"]

    def remaining(self, approval: ApprovalRequest, now: datetime | None = None) -> float:
        return approval.remaining_seconds(now or self._clock())

    def effective_status(self, approval: ApprovalRequest, now: datetime | None = None) -> str:
        """Status for display: a pending approval past its expiry reads as expired."""
        if approval.is_locally_expired(now or self._clock()):
            return "expired"
        return approval.status

    async def approve(self, approval_id: str) -> ApprovalRequest:
        return await self.decide(approval_id, "approved")

    async def reject(self, approval_id: str) -> ApprovalRequest:
        return await self.decide(approval_id, "rejected")

    async def decide(self, approval_id: str, outcome: str) -> ApprovalRequest:
        verb = _DECISION_VERBS.get(outcome)
        if verb is None:
            raise ValueError(f"Unknown approval outcome: {outcome!r}")
        approval = self.find(approval_id)
        if approval is None:
            raise ValueError(f"Approval does not exist: {approval_id}")
        if approval.status != "pending":
            raise ValueError(f"Approval {approval_id} is already {approval.status}")
        if self._submitter is None:
            raise RuntimeError("No approval decision submitter configured")

        if approval.is_locally_expired(self._clock()):
            logger.info(f"Forwarding decision for locally expired approval {approval_id}")
        try:
            ack = await self._submitter.submit_approval(approval_id, verb)
        except ApiError as ex:
            logger.warning(f"Approval decision for {approval_id} refused: {ex}")
            raise ApprovalDecisionError(
                str(ex),
                approval_id=approval_id,
                status_code=ex.status_code,
                code=ex.code,
            ) from ex

        status = ack.get("status") if isinstance(ack, dict) else None
        if status not in APPROVAL_TERMINAL_STATUSES:
            status = outcome
        self.apply_server_status(approval_id, status)
        return approval

    def apply_server_status(self, approval_id: str, status: str) -> bool:
        """Record an authoritative status from the server. Local expiry never blocks it."""
        approval = self.find(approval_id)
        if approval is None:
            logger.warning(f"Server status for unknown approval {approval_id} ignored")
            return False
        changed = approval.transition(status)
        if changed:
            logger.info(f"Approval {approval_id} -> {status}")
            self._stop_countdown(approval_id)
            self._store.notify(None)
        else:
            logger.debug(f"Approval {approval_id} already {approval.status}; ignoring {status}")
        return changed

    def countdown(self, approval_id: str) -> ApprovalCountdown | None:
        return self._countdowns.get(approval_id)

    def sync_countdowns(self) -> None:
        """Start a countdown for each pending approval and stop the rest. Needs a running loop."""
        live = {a.id: a for a in self.pending()}
        for approval_id in list(self._countdowns):
            if approval_id not in live:
                self._stop_countdown(approval_id)
        for approval_id, approval in live.items():
            if approval_id in self._countdowns:
                continue
            countdown = ApprovalCountdown(
                approval,
                tick_seconds=self._tick_seconds,
                clock=self._clock,
                on_tick=self._on_tick,
            )
            countdown.start()
            self._countdowns[approval_id] = countdown

    def stop_countdowns(self) -> int:
        stopped = 0
        for approval_id in list(self._countdowns):
            self._stop_countdown(approval_id)
            stopped += 1
        if stopped:
            logger.debug(f"Stopped {stopped} approval countdown(s)")
        return stopped

    def _stop_countdown(self, approval_id: str) -> None:
        countdown = self._countdowns.pop(approval_id, None)
        if countdown is not None:
            countdown.cancel()
