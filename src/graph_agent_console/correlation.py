from __future__ import annotations

import asyncio
from collections.abc import Iterable

from loguru import logger

from graph_agent_console.sessions.models import ConsoleLine, Message
from graph_agent_console.sessions.session_store import SessionStore
from graph_agent_console.streams.channel_manager import ChannelListener, ChannelState, OutputChannelManager
from graph_agent_console.streams.events import ErrorEvent, ExitEvent, OutputEvent

DEFAULT_SALIENCE_MARKERS = ("🎯 Final Answer:", "✅", "❌", "🔄")

# States in which no exit event can reach us until someone reconnects.
_UNREACHABLE = (ChannelState.GAVE_UP, ChannelState.CLOSED)


class SalienceClassifier:
    """Decides whether a console line is worth showing as a conversation message."""

    def __init__(self, markers: Iterable[str] | None = None):
        self._markers = tuple(m for m in (markers if markers is not None else DEFAULT_SALIENCE_MARKERS) if m)

    @property
    def markers(self) -> tuple[str, ...]:
        return self._markers

    def is_salient(self, line: str) -> bool:
        if not line.strip():
            return False
        return any(marker in line for marker in self._markers)


class CorrelationRouter(ChannelListener):
    """Routes channel events for tracked streams into the session that launched them.

    The target session is fixed when tracking starts; changing the active
    session later does not redirect output already in flight.
    """

    def __init__(
        self,
        store: SessionStore,
        channel: OutputChannelManager,
        classifier: SalienceClassifier | None = None,
    ):
        self._store = store
        self._channel = channel
        self._classifier = classifier or SalienceClassifier()
        self._bindings: dict[str, str] = {}
        self._completions: dict[str, asyncio.Future[int | None]] = {}
        channel.add_listener(self)

    @property
    def bindings(self) -> dict[str, str]:
        return dict(self._bindings)

    def is_tracking(self, stream_id: str) -> bool:
        return stream_id in self._bindings

    async def track(self, stream_id: str, session_id: str) -> None:
        self._bindings[stream_id] = session_id
        self._completions[stream_id] = asyncio.get_running_loop().create_future()
        logger.bind(stream_id=stream_id).debug(f"Routing stream to session {session_id}")
        await self._channel.subscribe(stream_id)

    async def release(self, stream_id: str) -> None:
        self._bindings.pop(stream_id, None)
        future = self._completions.pop(stream_id, None)
        if future is not None and not future.done():
            future.cancel()
        await self._channel.unsubscribe(stream_id)
        self._channel.clear_output(stream_id)

    async def wait(self, stream_id: str) -> int | None:
        """Wait for a tracked stream to settle.

        Returns the exit code, or None when the stream is not tracked, was
        released, reported an error, or the channel can no longer deliver its
        exit. In the last two cases the binding stays, so a later exit is still
        recorded in the session. An exit that arrives before anyone waits is
        kept until the first wait collects it.
        """
        future = self._completions.get(stream_id)
        if future is None:
            return None
        if not future.done() and self._channel.state in _UNREACHABLE:
            return None
        try:
            code = await asyncio.shield(future)
        except asyncio.CancelledError:
            if future.cancelled():
                return None
            raise
        if self._completions.get(stream_id) is future:
            del self._completions[stream_id]
        return code

    def on_output(self, event: OutputEvent) -> None:
        session_id = self._bindings.get(event.stream_id)
        if session_id is None:
            return
        with self._store.batch():
            for line in event.lines:
                self._store.append_console(session_id, ConsoleLine(kind=event.kind, content=line))
                if self._classifier.is_salient(line):
                    self._store.append_message(session_id, Message(role="assistant", content=line))

    def on_exit(self, event: ExitEvent) -> None:
        session_id = self._bindings.pop(event.stream_id, None)
        if session_id is None:
            return
        with self._store.batch():
            self._store.append_console(
                session_id,
                ConsoleLine(kind="info", content=f"=== Process exited with code {event.code} ==="),
            )
            if event.code != 0:
                self._store.append_message(
                    session_id,
                    Message(
                        role="system",
                        content=f"Process failed with exit code {event.code}. Check console output for details.",
                    ),
                )
        # Everything buffered is in the session console now.
        self._channel.clear_output(event.stream_id)
        logger.bind(stream_id=event.stream_id).info(f"Stream exited with code {event.code}")

        future = self._completions.get(event.stream_id)
        if future is not None and not future.done():
            future.set_result(event.code)

    def on_error(self, event: ErrorEvent) -> None:
        session_id = self._bindings.get(event.stream_id)
        if session_id is None:
            return
        self._store.append_console(session_id, ConsoleLine(kind="stderr", content=f"Error: {event.error}"))
        logger.bind(stream_id=event.stream_id).warning(f"Stream reported an error: {event.error}")
        self._settle(event.stream_id)

    def on_state_change(self, state: ChannelState) -> None:
        if state not in _UNREACHABLE:
            return
        pending = [stream_id for stream_id, future in self._completions.items() if not future.done()]
        if pending:
            logger.warning(f"Output channel {state.value}; releasing {len(pending)} waiting stream(s)")
        for stream_id in pending:
            self._settle(stream_id)

    def _settle(self, stream_id: str) -> None:
        """Answer current waiters with None; the exit code goes to a fresh future."""
        future = self._completions.get(stream_id)
        if future is None or future.done():
            return
        future.set_result(None)
        self._completions[stream_id] = future.get_loop().create_future()
