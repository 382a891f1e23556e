from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from uuid import uuid4

from loguru import logger

from graph_agent_console.sessions.models import ConsoleLine, Message, Session, utc_now
from graph_agent_console.sessions.storage import LocalStorage
from graph_agent_console.streams.ring_buffer import MAX_BUFFER_LINES

SESSIONS_KEY = "chat_sessions"
ACTIVE_SESSION_KEY = "active_session"

_PERSISTENCE_ERRORS = (sqlite3.Error, OSError, TypeError, ValueError)


class SessionStore:
    """Multi-conversation state with write-through persistence.

    In-memory state is the source of truth for the life of the process.
    Mutations addressed to a session id that no longer exists are dropped
    silently, so events that arrive after a delete are harmless.
    """

    def __init__(self, storage: LocalStorage | None = None, *, max_console_lines: int = MAX_BUFFER_LINES):
        self._storage = storage
        self._max_console_lines = max(0, max_console_lines)
        self._sessions: dict[str, Session] = {}
        self._active_id: str | None = None
        self._batch_depth = 0
        self._dirty = False
        self._load()

    @property
    def active_session_id(self) -> str | None:
        return self._active_id

    def create_session(self, title: str | None = None) -> Session:
        now = utc_now()
        session = Session(
            id=self._new_session_id(now),
            title=(title or "").strip() or self._default_title(now),
            created_at=now,
            updated_at=now,
        )
        self._sessions[session.id] = session
        self._active_id = session.id
        logger.info(f"Created session {session.id} ({session.title})")
        self._persist()
        return session.snapshot()

    def get_session(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return session.snapshot() if session is not None else None

    def get_active(self) -> Session | None:
        if self._active_id is None:
            return None
        return self.get_session(self._active_id)

    def list_sessions(self, limit: int | None = None) -> list[Session]:
        ordered = sorted(self._sessions.values(), key=lambda s: (s.updated_at, s.created_at), reverse=True)
        if limit is not None:
            ordered = ordered[: max(1, limit)]
        return [s.snapshot() for s in ordered]

    def switch_active(self, session_id: str) -> None:
        if session_id not in self._sessions:
            logger.debug(f"Ignoring switch to unknown session {session_id}")
            return
        self._active_id = session_id
        self._persist()

    def rename(self, session_id: str, title: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not title.strip():
            return False
        session.title = title.strip()
        session.updated_at = utc_now()
        self._persist()
        return True

    def append_message(self, session_id: str, message: Message) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug(f"Dropping {message.role} message for missing session {session_id}")
            return False
        session.messages.append(message)
        session.updated_at = utc_now()
        self._persist()
        return True

    def append_console(self, session_id: str, line: ConsoleLine) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            logger.trace(f"Dropping console line for missing session {session_id}")
            return False
        session.console.append(line)
        overflow = len(session.console) - self._max_console_lines
        if self._max_console_lines and overflow > 0:
            del session.console[:overflow]
        session.updated_at = utc_now()
        self._persist()
        return True

    def clear(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.messages.clear()
        session.console.clear()
        session.updated_at = utc_now()
        self._persist()
        return True

    def delete(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        if self._active_id == session_id:
            self._active_id = None
        logger.info(f"Deleted session {session_id}")
        self._persist()
        return True

    def clear_all(self) -> None:
        count = len(self._sessions)
        self._sessions.clear()
        self._active_id = None
        logger.info(f"Cleared all sessions ({count})")
        self._persist()

    def build_session_summary(self, session_id: str) -> dict:
        session = self._sessions.get(session_id)
        if session is None:
            raise ValueError(f"Session does not exist: {session_id}")

        user_count = 0
        assistant_count = 0
        system_count = 0
        last_user_preview = ""
        last_assistant_preview = ""
        for message in session.messages:
            if message.role == "user":
                user_count += 1
                last_user_preview = self._preview(message.content)
            elif message.role == "assistant":
                assistant_count += 1
                last_assistant_preview = self._preview(message.content)
            else:
                system_count += 1

        return {
            "session_id": session.id,
            "title": session.title,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "message_count": len(session.messages),
            "user_message_count": user_count,
            "assistant_message_count": assistant_count,
            "system_message_count": system_count,
            "console_line_count": len(session.console),
            "last_user_preview": last_user_preview,
            "last_assistant_preview": last_assistant_preview,
        }

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer persistence until the outermost batch exits."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._persist()

    def _persist(self) -> None:
        if self._batch_depth > 0:
            self._dirty = True
            return
        self._dirty = False
        if self._storage is None:
            return
        try:
            payload = json.dumps([s.to_dict() for s in self._sessions.values()], ensure_ascii=True)
            with self._storage.transaction():
                self._storage.set_item(SESSIONS_KEY, payload)
                if self._active_id is None:
                    self._storage.remove_item(ACTIVE_SESSION_KEY)
                else:
                    self._storage.set_item(ACTIVE_SESSION_KEY, self._active_id)
        except _PERSISTENCE_ERRORS as ex:
            logger.error(f"Failed to persist sessions: {type(ex).__name__}: {ex}")

    def _load(self) -> None:
        if self._storage is None:
            return
        try:
            raw_sessions = self._storage.get_item(SESSIONS_KEY)
            active_id = self._storage.get_item(ACTIVE_SESSION_KEY)
        except _PERSISTENCE_ERRORS as ex:
            logger.error(f"Failed to load sessions, starting empty: {type(ex).__name__}: {ex}")
            return

        if raw_sessions:
            try:
                entries = json.loads(raw_sessions)
            except ValueError as ex:
                logger.error(f"Stored sessions are not valid JSON, starting empty: {ex}")
                entries = []
            if not isinstance(entries, list):
                logger.error("Stored sessions are not a list, starting empty")
                entries = []
            for entry in entries:
                try:
                    session = Session.from_dict(entry)
                except (KeyError, TypeError, ValueError, AttributeError) as ex:
                    logger.warning(f"Skipping unreadable stored session: {type(ex).__name__}: {ex}")
                    continue
                self._sessions[session.id] = session

        self._active_id = active_id or None
        logger.info(f"Loaded {len(self._sessions)} session(s) from {self._storage.path}")

    def _new_session_id(self, now: datetime) -> str:
        return f"session-{int(now.timestamp() * 1000)}-{uuid4().hex[:9]}"

    def _default_title(self, now: datetime) -> str:
        return f"Chat {now.isoformat(timespec='minutes')[:16].replace('T', ' ')}"

    def _preview(self, text: str, max_chars: int = 140) -> str:
        text = " ".join(text.split())
        if len(text) <= max_chars:
            return text
        return text[: max_chars - 3] + "..."
