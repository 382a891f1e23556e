from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_session: Callable[[str], Awaitable[None]],
        on_console: Callable[[str], Awaitable[None]],
        on_messages: Callable[[str], Awaitable[None]],
        on_status: Callable[[str], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_session = on_session
        self._on_console = on_console
        self._on_messages = on_messages
        self._on_status = on_status
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        command = trimmed.split(maxsplit=1)[0]
        if command == "/help":
            await self._on_help()
            return True
        if command == "/session":
            await self._on_session(trimmed)
            return True
        if command == "/console":
            await self._on_console(trimmed)
            return True
        if command == "/messages":
            await self._on_messages(trimmed)
            return True
        if command == "/status":
            await self._on_status(trimmed)
            return True

        self._on_unknown(trimmed)
        return True
