from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

from loguru import logger

from agent_chat_client.models import ApprovalRequest, Message, ToolCall

Observer = Callable[["TranscriptStore", Any], None]


class TranscriptStore:
    """Ordered, id-unique messages of one session, in memory only."""

    def __init__(self, session_id: str, *, reconcile_window_seconds: float = 120.0):
        self._session_id = session_id
        self._reconcile_window_seconds = max(0.0, reconcile_window_seconds)
        self._messages: list[Message] = []
        self._index: dict[str, Message] = {}
        self._observers: list[Observer] = []

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    def get(self, message_id: str) -> Message | None:
        return self._index.get(message_id)

    def add(self, message: Message) -> bool:
        if message.id in self._index:
            logger.warning(f"Duplicate message id ignored: {message.id}")
            return False
        self._messages.append(message)
        self._index[message.id] = message
        return True

    def open_messages(self) -> list[Message]:
        return [m for m in self._messages if m.is_open]

    def iter_tool_calls(self) -> Iterator[ToolCall]:
        for message in self._messages:
            yield from message.tool_calls

    def iter_approvals(self) -> Iterator[ApprovalRequest]:
        for message in self._messages:
            if message.approval is not None:
                yield message.approval

    def finalize_open(self, kind: str, text: str | None = None) -> list[Message]:
        finalized = self.open_messages()
        for message in finalized:
            message.fail(kind, text)
        if finalized:
            logger.info(f"Finalized {len(finalized)} open message(s) as error ({kind})")
        return finalized

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def notify(self, event: Any = None) -> None:
        for observer in list(self._observers):
            try:
                observer(self, event)
            except Exception as ex:
                logger.error(f"Transcript observer failed: {type(ex).__name__}: {ex}")

    def load_history(self, history: list[Message]) -> None:
        """Rehydrate from the server's history, which wins on conflicts.

        Local messages the server already knows (same id) are replaced. An
        optimistic user message with no id match is dropped when history holds
        one with the same role and content created within the reconcile window.
        Anything else local is kept after the history, in its current order.
        """
        merged: list[Message] = []
        known: set[str] = set()
        for message in history:
            if message.id in known:
                continue
            merged.append(message)
            known.add(message.id)

        server = list(merged)
        claimed: set[str] = set()
        kept_local = 0
        dropped = 0
        for local in self._messages:
            if local.id in known:
                continue
            if local.optimistic:
                match = self._find_counterpart(local, server, claimed)
                if match is not None:
                    claimed.add(match.id)
                    dropped += 1
                    continue
            merged.append(local)
            kept_local += 1

        self._messages = merged
        self._index = {m.id: m for m in merged}
        logger.info(
            f"Loaded {len(history)} history message(s) for session {self._session_id} "
            f"(kept {kept_local} local, dropped {dropped} optimistic duplicate(s))"
        )
        self.notify(None)

    def _find_counterpart(self, local: Message, candidates: list[Message], claimed: set[str]) -> Message | None:
        for candidate in candidates:
            if candidate.id in claimed:
                continue
            if candidate.role != local.role or candidate.content != local.content:
                continue
            delta = abs((candidate.created_at - local.created_at).total_seconds())
            if delta <= self._reconcile_window_seconds:
                return candidate
        return None
