from __future__ import annotations

from loguru import logger

from graph_agent_console.correlation import CorrelationRouter
from graph_agent_console.launcher import ProcessLauncher, ProcessStartError
from graph_agent_console.sessions.models import ConsoleLine, Message
from graph_agent_console.sessions.session_store import SessionStore

DEFAULT_AGENT_OPERATION = "agent-mode"
_TITLE_CHARS = 50


class AgentQueryService:
    def __init__(
        self,
        *,
        store: SessionStore,
        launcher: ProcessLauncher,
        router: CorrelationRouter,
        operation: str = DEFAULT_AGENT_OPERATION,
    ):
        self._store = store
        self._launcher = launcher
        self._router = router
        self._operation = operation

    async def submit(self, query: str, *, new_session: bool = False) -> str:
        """Record ``query`` in a session, start the agent process and route its output.

        Returns the process id. Raises ProcessStartError when the backend does
        not start the process; the failure is also recorded in the session.
        """
        text = query.strip()
        if not text:
            raise ValueError("Query must not be empty")

        session_id = self._store.active_session_id
        if new_session or session_id is None or self._store.get_session(session_id) is None:
            session_id = self._store.create_session(f"Q: {text[:_TITLE_CHARS]}...").id

        args = ["--question", text]
        with self._store.batch():
            self._store.append_message(session_id, Message(role="user", content=text))
            self._store.append_console(
                session_id,
                ConsoleLine(kind="info", content=f'=== Executing: {self._operation} --question "{text}" ==='),
            )

        result = await self._launcher.start(self._operation, args)
        if not result.success or not result.process_id:
            error = result.error or f"Failed to start {self._operation}"
            logger.error(f"Query in session {session_id} failed to start: {error}")
            with self._store.batch():
                self._store.append_message(session_id, Message(role="system", content=f"Error: {error}"))
                self._store.append_console(session_id, ConsoleLine(kind="stderr", content=f"Error: {error}"))
            raise ProcessStartError(error)

        self._store.append_console(session_id, ConsoleLine(kind="info", content=f"Process ID: {result.process_id}"))
        await self._router.track(result.process_id, session_id)
        return result.process_id
