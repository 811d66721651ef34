from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_approve: Callable[[str], Awaitable[None]],
        on_reject: Callable[[str], Awaitable[None]],
        on_approvals: Callable[[], Awaitable[None]],
        on_history: Callable[[], Awaitable[None]],
        on_session: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_approve = on_approve
        self._on_reject = on_reject
        self._on_approvals = on_approvals
        self._on_history = on_history
        self._on_session = on_session
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        command, _, argument = trimmed.partition(" ")
        argument = argument.strip()

        if command == "/help":
            await self._on_help()
            return True
        if command in ("/approve", "/reject"):
            if not argument:
                self._on_unknown(f"{command} needs an approval id")
                return True
            handler = self._on_approve if command == "/approve" else self._on_reject
            await handler(argument)
            return True
        if command == "/approvals":
            await self._on_approvals()
            return True
        if command == "/history":
            await self._on_history()
            return True
        if command == "/session":
            await self._on_session()
            return True

        self._on_unknown(trimmed)
        return True
