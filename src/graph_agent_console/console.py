from __future__ import annotations

import asyncio

from loguru import logger

from graph_agent_console.commands.router import CommandRouter
from graph_agent_console.correlation import CorrelationRouter
from graph_agent_console.launcher import ProcessStartError
from graph_agent_console.services.query_service import AgentQueryService
from graph_agent_console.services.session_controller import SessionController
from graph_agent_console.sessions.models import Session, utc_now
from graph_agent_console.sessions.session_store import SessionStore
from graph_agent_console.streams.channel_manager import ChannelListener, ChannelState, OutputChannelManager


class ConnectionStatusListener(ChannelListener):
    def __init__(self, channel: OutputChannelManager, *, line_prefix: str):
        self._channel = channel
        self._line_prefix = line_prefix

    def on_state_change(self, state: ChannelState) -> None:
        if state is ChannelState.CONNECTED:
            print(f"\n{self._line_prefix}[channel] connected")
        elif state is ChannelState.RECONNECTING:
            print(f"\n{self._line_prefix}[channel] disconnected, retrying...")
        elif state is ChannelState.GAVE_UP:
            print(
                f"\n{self._line_prefix}[channel] backend unreachable after "
                f"{self._channel.policy.max_attempts} attempts; buffered output is kept. "
                "Use /status reconnect to try again."
            )


class AgentConsole:
    _LINE_PREFIX = "agent> "
    _USER_PROMPT = "you> "
    _DEFAULT_CONSOLE_LIMIT = 50

    def __init__(
        self,
        *,
        store: SessionStore,
        channel: OutputChannelManager,
        router: CorrelationRouter,
        query_service: AgentQueryService,
    ):
        self._store = store
        self._channel = channel
        self._router = router
        self._query_service = query_service
        self._run_lock = asyncio.Lock()
        self._session_controller = SessionController(line_prefix=self._LINE_PREFIX)
        self._status_listener = ConnectionStatusListener(channel, line_prefix=self._LINE_PREFIX)
        channel.add_listener(self._status_listener)

        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_session=self._handle_session_command,
            on_console=self._handle_console_command,
            on_messages=self._handle_messages_command,
            on_status=self._handle_status_command,
            on_unknown=self._on_unknown_command,
        )

    @property
    def user_prompt(self) -> str:
        return self._USER_PROMPT

    async def run(self, user_input: str) -> None:
        async with self._run_lock:
            if await self._command_router.try_handle(user_input):
                return
            await self._ask(user_input)

    async def _ask(self, query: str) -> None:
        started = utc_now()
        try:
            stream_id = await self._query_service.submit(query)
        except ProcessStartError as ex:
            print(f"{self._LINE_PREFIX}Error: {ex}")
            return

        session_id = self._router.bindings.get(stream_id)
        print(f"{self._LINE_PREFIX}Started process {stream_id}; waiting for the agent...")
        code = await self._router.wait(stream_id)
        session = self._store.get_session(session_id) if session_id else None
        if session is None:
            logger.debug(f"Session for stream {stream_id} disappeared before it finished")
            return

        replies = [m for m in session.messages if m.role != "user" and m.timestamp >= started]
        for message in replies:
            print(self._session_controller.format_message(message))
        if code is None:
            if self._channel.state in (ChannelState.GAVE_UP, ChannelState.CLOSED):
                print(
                    f"{self._LINE_PREFIX}Output channel unavailable; {stream_id} may still be running. "
                    "Use /status reconnect, then /console to follow it."
                )
            else:
                print(
                    f"{self._LINE_PREFIX}Process {stream_id} reported an error; its output is still "
                    "recorded in this session. Use /console to follow it."
                )
            return
        if not replies and code == 0:
            print(f"{self._LINE_PREFIX}Process finished without a final answer. Use /console to inspect its output.")

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Type a question to ask the agent, or use a command:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /session")
        print(f"{self._LINE_PREFIX}- /session new [title]")
        print(f"{self._LINE_PREFIX}- /session list [limit]")
        print(f"{self._LINE_PREFIX}- /session name <title>")
        print(f"{self._LINE_PREFIX}- /session switch <id-or-name>")
        print(f"{self._LINE_PREFIX}- /session clear")
        print(f"{self._LINE_PREFIX}- /session delete [id-or-name]")
        print(f"{self._LINE_PREFIX}- /session clear-all")
        print(f"{self._LINE_PREFIX}- /messages")
        print(f"{self._LINE_PREFIX}- /console [limit]")
        print(f"{self._LINE_PREFIX}- /status [reconnect]")

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")

    async def _handle_session_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) == 1:
            session = self._store.get_active()
            if session is None:
                print(f"{self._LINE_PREFIX}Current session: none")
                return
            print(
                f"{self._LINE_PREFIX}Current session: {session.title} "
                f"[{self._session_controller.short_id(session.id)}] (id={session.id})"
            )
            for line in self._session_controller.format_summary_lines(self._store.build_session_summary(session.id)):
                print(line)
            return

        action = parts[1]
        argument = command.partition(action)[2].strip()

        if action == "list":
            limit = 20
            if argument:
                try:
                    limit = int(argument)
                except ValueError:
                    print(f"{self._LINE_PREFIX}Usage: /session list [limit]")
                    return
            sessions = self._store.list_sessions(limit=limit)
            if not sessions:
                print(f"{self._LINE_PREFIX}No sessions found.")
                return
            print(f"{self._LINE_PREFIX}Recent sessions:")
            for s in sessions:
                print(
                    self._session_controller.format_session_list_entry(
                        s, active_session_id=self._store.active_session_id
                    )
                )
            return

        if action == "new":
            session = self._store.create_session(argument or None)
            print(
                f"{self._LINE_PREFIX}Started new session: {session.title} "
                f"[{self._session_controller.short_id(session.id)}] (id={session.id})"
            )
            return

        if action == "name":
            active_id = self._store.active_session_id
            if active_id is None:
                print(f"{self._LINE_PREFIX}No active session to name")
                return
            if not argument:
                print(f"{self._LINE_PREFIX}Usage: /session name <title>")
                return
            self._store.rename(active_id, argument)
            print(f"{self._LINE_PREFIX}Session named: {argument}")
            return

        if action == "switch":
            if not argument:
                print(f"{self._LINE_PREFIX}Usage: /session switch <id-or-name>")
                return
            session = self._resolve_or_report(argument)
            if session is None:
                return
            self._store.switch_active(session.id)
            print(
                f"{self._LINE_PREFIX}Switched to session {session.title} "
                f"[{self._session_controller.short_id(session.id)}] ({len(session.messages)} messages)"
            )
            return

        if action == "clear":
            active_id = self._store.active_session_id
            if active_id is None or not self._store.clear(active_id):
                print(f"{self._LINE_PREFIX}No active session to clear")
                return
            print(f"{self._LINE_PREFIX}Session cleared")
            return

        if action == "delete":
            if argument:
                session = self._resolve_or_report(argument)
                if session is None:
                    return
                target_id = session.id
            else:
                target_id = self._store.active_session_id
                if target_id is None:
                    print(f"{self._LINE_PREFIX}No active session to delete")
                    return
            self._store.delete(target_id)
            print(f"{self._LINE_PREFIX}Deleted session {target_id}")
            return

        if action == "clear-all":
            self._store.clear_all()
            print(f"{self._LINE_PREFIX}All sessions deleted")
            return

        print(
            f"{self._LINE_PREFIX}Usage: /session | /session new [title] | /session list [limit] | "
            "/session name <title> | /session switch <id-or-name> | /session clear | "
            "/session delete [id-or-name] | /session clear-all"
        )

    async def _handle_console_command(self, command: str) -> None:
        parts = command.split()
        limit = self._DEFAULT_CONSOLE_LIMIT
        if len(parts) >= 2:
            try:
                limit = max(1, int(parts[1]))
            except ValueError:
                print(f"{self._LINE_PREFIX}Usage: /console [limit]")
                return
        session = self._store.get_active()
        if session is None:
            print(f"{self._LINE_PREFIX}No active session")
            return
        if not session.console:
            print(f"{self._LINE_PREFIX}Console is empty")
            return
        for line in session.console[-limit:]:
            print(self._session_controller.format_console_line(line))

    async def _handle_messages_command(self, command: str) -> None:
        session = self._store.get_active()
        if session is None:
            print(f"{self._LINE_PREFIX}No active session")
            return
        if not session.messages:
            print(f"{self._LINE_PREFIX}No messages yet")
            return
        for message in session.messages:
            print(self._session_controller.format_message(message))

    async def _handle_status_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) >= 2:
            if parts[1] != "reconnect":
                print(f"{self._LINE_PREFIX}Usage: /status [reconnect]")
                return
            await self._reconnect()

        state = self._channel.state
        print(f"{self._LINE_PREFIX}Channel: {state.value}")
        if state is ChannelState.RECONNECTING:
            print(
                f"{self._LINE_PREFIX}Reconnect attempt {self._channel.reconnect_attempt}"
                f"/{self._channel.policy.max_attempts}"
            )
        subscriptions = self._channel.active_subscriptions
        if subscriptions:
            print(f"{self._LINE_PREFIX}Live streams:")
            for stream_id in subscriptions:
                buffered = len(self._channel.get_output(stream_id))
                target = self._router.bindings.get(stream_id, "-")
                print(f"{self._LINE_PREFIX}- {stream_id} (buffered lines={buffered}, session={target})")
        else:
            print(f"{self._LINE_PREFIX}Live streams: none")
        active = self._store.active_session_id
        print(f"{self._LINE_PREFIX}Active session: {active or 'none'}")

    async def _reconnect(self) -> None:
        if self._channel.state in (ChannelState.CONNECTED, ChannelState.RECONNECTING):
            print(f"{self._LINE_PREFIX}Channel is {self._channel.state.value}; nothing to do")
            return
        await self._channel.connect()

    def _resolve_or_report(self, identifier: str) -> Session | None:
        try:
            session = self._resolve_session(identifier)
        except ValueError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return None
        if session is None:
            print(f"{self._LINE_PREFIX}Session not found: {identifier}")
        return session

    def _resolve_session(self, identifier: str) -> Session | None:
        exact = self._store.get_session(identifier)
        if exact is not None:
            return exact
        wanted = identifier.casefold()
        matches = [
            s
            for s in self._store.list_sessions()
            if self._session_controller.short_id(s.id) == identifier or s.title.casefold() == wanted
        ]
        if len(matches) > 1:
            raise ValueError(f"Ambiguous session identifier: {identifier} ({len(matches)} matches)")
        return matches[0] if matches else None
