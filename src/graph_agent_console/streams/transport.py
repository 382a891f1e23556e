from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol, runtime_checkable

import websockets

_OPEN_TIMEOUT_SECONDS = 10


@runtime_checkable
class Connection(Protocol):
    async def send(self, message: str) -> None: ...
    async def close(self) -> None: ...
    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[], Awaitable[Connection]]

# Errors that mean "the link is gone", as opposed to bugs in our own code.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    websockets.ConnectionClosed,
    websockets.InvalidHandshake,
    OSError,
    TimeoutError,
)


def websocket_connector(url: str, *, headers: dict[str, str] | None = None) -> Connector:
    async def _connect() -> Connection:
        return await websockets.connect(
            url,
            additional_headers=headers or None,
            open_timeout=_OPEN_TIMEOUT_SECONDS,
        )

    return _connect
