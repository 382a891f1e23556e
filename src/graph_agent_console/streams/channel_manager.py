from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from graph_agent_console.streams.events import (
    ChannelEvent,
    ErrorEvent,
    ExitEvent,
    OutputEvent,
    encode_request,
    parse_frame,
)
from graph_agent_console.streams.reconnect import ReconnectPolicy
from graph_agent_console.streams.ring_buffer import MAX_BUFFER_LINES, BoundedRingBuffer
from graph_agent_console.streams.transport import TRANSPORT_ERRORS, Connection, Connector


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    GAVE_UP = "gave_up"
    CLOSED = "closed"


class ChannelListener:
    """Callbacks invoked by the manager for every delivered event.

    Callbacks run synchronously on the event loop, one event at a time, so a
    listener sees each event fully applied before the next one arrives.
    """

    def on_output(self, event: OutputEvent) -> None:
        return

    def on_exit(self, event: ExitEvent) -> None:
        return

    def on_error(self, event: ErrorEvent) -> None:
        return

    def on_state_change(self, state: ChannelState) -> None:
        return


async def _cancel_task(task: asyncio.Task | None) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class OutputChannelManager:
    """Multiplexes process output streams over one duplex connection.

    The set of subscribed stream ids is the record of what the server should
    be pushing to us; it is replayed after every successful (re)connect.
    """

    def __init__(
        self,
        connector: Connector,
        *,
        max_buffer_lines: int = MAX_BUFFER_LINES,
        reconnect_policy: ReconnectPolicy | None = None,
        listeners: Iterable[ChannelListener] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connector = connector
        self._buffer: BoundedRingBuffer[OutputEvent] = BoundedRingBuffer(max_buffer_lines)
        self._policy = reconnect_policy or ReconnectPolicy()
        self._listeners: list[ChannelListener] = list(listeners)
        self._sleep = sleep
        # dict as an insertion-ordered set
        self._subscriptions: dict[str, None] = {}
        self._state = ChannelState.DISCONNECTED
        self._connection: Connection | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._attempt = 0
        self._closing = False

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ChannelState.CONNECTED

    @property
    def active_subscriptions(self) -> tuple[str, ...]:
        return tuple(self._subscriptions)

    @property
    def reconnect_attempt(self) -> int:
        return self._attempt

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    def add_listener(self, listener: ChannelListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChannelListener) -> None:
        """Detach ``listener``; it receives no event dispatched after this call."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self) -> bool:
        if self._state in (ChannelState.CONNECTING, ChannelState.CONNECTED, ChannelState.RECONNECTING):
            return self.is_connected
        if self._state is ChannelState.CLOSED:
            logger.warning("connect() called on a closed output channel")
            return False

        self._set_state(ChannelState.CONNECTING)
        try:
            await self._open()
        except TRANSPORT_ERRORS as ex:
            logger.warning(f"Output channel connect failed: {type(ex).__name__}: {ex}")
            self._schedule_reconnect()
            return False
        except Exception as ex:
            # Not a dropped link (bad URL, bad headers); retrying cannot help.
            logger.error(f"Output channel cannot connect: {type(ex).__name__}: {ex}")
            self._set_state(ChannelState.GAVE_UP)
            return False
        return self.is_connected

    async def subscribe(self, stream_id: str) -> None:
        if self._state is ChannelState.CLOSED:
            logger.warning(f"Ignoring subscribe for {stream_id} on a closed output channel")
            return
        if stream_id in self._subscriptions:
            return
        self._subscriptions[stream_id] = None
        self._buffer.ensure(stream_id)
        if self.is_connected:
            await self._send("subscribe", stream_id)
        else:
            logger.bind(stream_id=stream_id).debug("Subscription pending until the channel connects")

    async def unsubscribe(self, stream_id: str) -> None:
        if stream_id not in self._subscriptions:
            return
        del self._subscriptions[stream_id]
        if self.is_connected:
            await self._send("unsubscribe", stream_id)

    def handle_event(self, event: ChannelEvent) -> None:
        if isinstance(event, OutputEvent):
            self.on_output(event)
            self._notify("on_output", event)
        elif isinstance(event, ExitEvent):
            self.on_terminal(event.stream_id)
            self._notify("on_exit", event)
        elif isinstance(event, ErrorEvent):
            # An error does not end the stream; the id stays subscribed until its exit.
            self._notify("on_error", event)

    def on_output(self, event: OutputEvent) -> None:
        self._buffer.append(event.stream_id, event)

    def on_terminal(self, stream_id: str) -> None:
        self._subscriptions.pop(stream_id, None)

    @property
    def buffered_stream_ids(self) -> tuple[str, ...]:
        return tuple(self._buffer.keys())

    def get_output(self, stream_id: str) -> list[str]:
        return self._buffer.read(stream_id)

    def get_events(self, stream_id: str) -> list[OutputEvent]:
        return self._buffer.events(stream_id)

    def clear_output(self, stream_id: str) -> None:
        self._buffer.clear(stream_id)

    async def teardown(self) -> None:
        if self._state is ChannelState.CLOSED:
            return
        self._closing = True
        await _cancel_task(self._reconnect_task)
        self._reconnect_task = None

        if self.is_connected:
            for stream_id in list(self._subscriptions):
                await self._send("unsubscribe", stream_id)
        self._subscriptions.clear()
        self._buffer.clear_all()

        connection, self._connection = self._connection, None
        self._set_state(ChannelState.CLOSED)
        await _cancel_task(self._reader_task)
        self._reader_task = None
        if connection is not None:
            await self._close_quietly(connection)
        self._listeners.clear()

    async def _open(self) -> None:
        connection = await self._connector()
        if self._closing:
            await self._close_quietly(connection)
            return

        self._connection = connection
        self._attempt = 0
        self._set_state(ChannelState.CONNECTED)
        self._reader_task = asyncio.create_task(self._read_loop(connection))
        pending = list(self._subscriptions)
        if pending:
            logger.info(f"Re-subscribing {len(pending)} stream(s) after connect")
        for stream_id in pending:
            await self._send("subscribe", stream_id)

    async def _read_loop(self, connection: Connection) -> None:
        try:
            async for raw in connection:
                event = parse_frame(raw)
                if event is not None:
                    self.handle_event(event)
            logger.warning("Output channel closed by the server")
        except TRANSPORT_ERRORS as ex:
            logger.warning(f"Output channel connection lost: {type(ex).__name__}: {ex}")

        if connection is self._connection:
            self._connection = None
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing or self._state is ChannelState.RECONNECTING:
            return
        self._set_state(ChannelState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        self._attempt = 0
        retrying = AsyncRetrying(
            wait=self._policy.wait,
            stop=stop_after_attempt(self._policy.max_attempts),
            retry=retry_if_exception_type(TRANSPORT_ERRORS),
            before_sleep=self._on_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            await self._sleep(self._policy.delay_seconds(0))
            async for attempt in retrying:
                with attempt:
                    self._attempt = attempt.retry_state.attempt_number
                    await self._open()
        except TRANSPORT_ERRORS as ex:
            logger.error(
                f"Output channel gave up after {self._policy.max_attempts} reconnect attempt(s): "
                f"{type(ex).__name__}: {ex}"
            )
            self._set_state(ChannelState.GAVE_UP)
        except Exception as ex:
            logger.error(f"Output channel reconnect aborted: {type(ex).__name__}: {ex}")
            self._set_state(ChannelState.GAVE_UP)

    def _on_retry(self, retry_state: RetryCallState) -> None:
        attempt = retry_state.attempt_number
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = type(exc).__name__ if exc else "Unknown"
        logger.warning(
            f"Output channel reconnect failed ({reason}). "
            f"Retrying in {wait:.1f}s (attempt {attempt}/{self._policy.max_attempts})..."
        )

    async def _send(self, event: str, stream_id: str) -> bool:
        connection = self._connection
        if connection is None or not self.is_connected:
            return False
        try:
            await connection.send(encode_request(event, stream_id))
        except TRANSPORT_ERRORS as ex:
            # The reader notices the dead link and reconnects; the id stays in
            # the subscription set and is replayed then.
            logger.bind(stream_id=stream_id).warning(f"Failed to send {event}: {type(ex).__name__}: {ex}")
            return False
        logger.bind(stream_id=stream_id).debug(f"Sent {event}")
        return True

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        logger.info(f"Output channel {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._listeners):
            try:
                listener.on_state_change(state)
            except Exception as ex:
                logger.error(f"Channel listener {type(listener).__name__}.on_state_change failed: {ex}")

    def _notify(self, method: str, event: ChannelEvent) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(event)
            except Exception as ex:
                logger.error(f"Channel listener {type(listener).__name__}.{method} failed: {ex}")

    async def _close_quietly(self, connection: Connection) -> None:
        try:
            await connection.close()
        except TRANSPORT_ERRORS as ex:
            logger.debug(f"Ignoring error while closing output channel: {ex}")
