import json
import sqlite3
import unittest
from datetime import UTC, datetime

from graph_agent_console.sessions import ConsoleLine, LocalStorage, Message, SessionStore
from graph_agent_console.sessions.session_store import ACTIVE_SESSION_KEY, SESSIONS_KEY
from tests.sessions.base import SessionStoreTestCase, make_session


class _CountingStorage(LocalStorage):
    def __init__(self, db_path: str):
        super().__init__(db_path)
        self.writes = 0

    def set_item(self, key: str, value: str) -> None:
        self.writes += 1
        super().set_item(key, value)


class _BrokenStorage(LocalStorage):
    def get_item(self, key: str) -> str | None:
        raise sqlite3.OperationalError("database is locked")

    def set_item(self, key: str, value: str) -> None:
        raise sqlite3.OperationalError("database is locked")


class SessionStoreTests(SessionStoreTestCase):
    def test_create_session_becomes_active(self) -> None:
        session = self._store.create_session()
        self.assertTrue(session.id.startswith("session-"))
        self.assertTrue(session.title.startswith("Chat "))
        self.assertEqual(session.created_at, session.updated_at)
        self.assertEqual(session.id, self._store.active_session_id)
        self.assertEqual(session, self._store.get_active())

    def test_session_ids_are_unique(self) -> None:
        ids = {self._store.create_session().id for _ in range(20)}
        self.assertEqual(20, len(ids))

    def test_append_updates_timestamp_and_order(self) -> None:
        session = self._store.create_session("Ordered")
        self.assertTrue(self._store.append_message(session.id, Message(role="user", content="one")))
        self.assertTrue(self._store.append_message(session.id, Message(role="assistant", content="two")))
        self.assertTrue(self._store.append_console(session.id, ConsoleLine(kind="stdout", content="line")))

        loaded = self._store.get_session(session.id)
        self.assertEqual(["one", "two"], [m.content for m in loaded.messages])
        self.assertEqual(["line"], [c.content for c in loaded.console])
        self.assertGreaterEqual(loaded.updated_at, session.updated_at)

    def test_append_after_delete_is_a_silent_no_op(self) -> None:
        session = self._store.create_session()
        self._store.append_message(session.id, Message(role="user", content="hello"))
        self.assertTrue(self._store.delete(session.id))

        self.assertFalse(self._store.append_message(session.id, Message(role="assistant", content="late")))
        self.assertFalse(self._store.append_console(session.id, ConsoleLine(kind="stdout", content="late")))
        self.assertIsNone(self._store.get_session(session.id))
        self.assertIsNone(self._store.active_session_id)
        self.assertEqual([], self._store.list_sessions())

    def test_returned_sessions_are_snapshots(self) -> None:
        session = self._store.create_session()
        session.messages.append(Message(role="user", content="not stored"))
        self.assertEqual([], self._store.get_session(session.id).messages)

    def test_switch_active_ignores_unknown_ids(self) -> None:
        first = self._store.create_session("First")
        second = self._store.create_session("Second")
        self.assertEqual(second.id, self._store.active_session_id)

        self._store.switch_active(first.id)
        self.assertEqual(first.id, self._store.active_session_id)
        self._store.switch_active("session-missing")
        self.assertEqual(first.id, self._store.active_session_id)

    def test_rename(self) -> None:
        session = self._store.create_session("Old")
        self.assertTrue(self._store.rename(session.id, "  New name "))
        self.assertEqual("New name", self._store.get_session(session.id).title)
        self.assertFalse(self._store.rename(session.id, "   "))
        self.assertFalse(self._store.rename("session-missing", "x"))

    def test_clear_keeps_identity(self) -> None:
        session = self._store.create_session("Keep me")
        self._store.append_message(session.id, Message(role="user", content="x"))
        self._store.append_console(session.id, ConsoleLine(kind="info", content="y"))

        self.assertTrue(self._store.clear(session.id))
        cleared = self._store.get_session(session.id)
        self.assertEqual("Keep me", cleared.title)
        self.assertEqual([], cleared.messages)
        self.assertEqual([], cleared.console)
        self.assertEqual(session.id, self._store.active_session_id)

    def test_clear_all(self) -> None:
        self._store.create_session()
        self._store.create_session()
        self._store.clear_all()
        self.assertEqual([], self._store.list_sessions())
        self.assertIsNone(self._store.active_session_id)
        self.assertIsNone(self._storage.get_item(ACTIVE_SESSION_KEY))
        self.assertEqual([], self._reopen().list_sessions())

    def test_list_sessions_newest_first_with_limit(self) -> None:
        store = self._seed(
            make_session("s-old", datetime(2026, 1, 1, tzinfo=UTC)),
            make_session("s-new", datetime(2026, 3, 1, tzinfo=UTC)),
            make_session("s-mid", datetime(2026, 2, 1, tzinfo=UTC)),
        )
        self.assertEqual(["s-new", "s-mid", "s-old"], [s.id for s in store.list_sessions()])
        self.assertEqual(["s-new"], [s.id for s in store.list_sessions(limit=1)])

    def test_round_trip_through_storage(self) -> None:
        ts = datetime(2026, 10, 19, 8, 15, 30, 654321, tzinfo=UTC)
        empty = self._store.create_session("Empty")
        chatty = self._store.create_session("Chatty")
        self._store.append_message(chatty.id, Message(role="user", content="How many nodes?", timestamp=ts))
        self._store.append_message(chatty.id, Message(role="assistant", content="🎯 Final Answer: 42", timestamp=ts))
        self._store.append_message(chatty.id, Message(role="system", content="note", timestamp=ts))
        noisy = self._store.create_session("Noisy")
        for i in range(5):
            self._store.append_console(noisy.id, ConsoleLine(kind="stdout", content=f"line {i}", timestamp=ts))
        self._store.append_console(noisy.id, ConsoleLine(kind="stderr", content="warn", timestamp=ts))
        self._store.switch_active(chatty.id)

        before = {s.id: s for s in self._store.list_sessions()}
        reopened = self._reopen()

        self.assertEqual(chatty.id, reopened.active_session_id)
        self.assertEqual(before, {s.id: s for s in reopened.list_sessions()})
        self.assertEqual([], reopened.get_session(empty.id).messages)

    def test_console_transcript_is_capped(self) -> None:
        store = SessionStore(None, max_console_lines=3)
        session = store.create_session()
        for i in range(5):
            store.append_console(session.id, ConsoleLine(kind="stdout", content=str(i)))
        self.assertEqual(["2", "3", "4"], [c.content for c in store.get_session(session.id).console])

    def test_zero_console_cap_means_unbounded(self) -> None:
        store = SessionStore(None, max_console_lines=0)
        session = store.create_session()
        for i in range(50):
            store.append_console(session.id, ConsoleLine(kind="stdout", content=str(i)))
        self.assertEqual(50, len(store.get_session(session.id).console))

    def test_batch_persists_once(self) -> None:
        storage = _CountingStorage(str(self._tmp_dir / "counted.db"))
        try:
            store = SessionStore(storage)
            session = store.create_session()
            storage.writes = 0

            with store.batch():
                for i in range(10):
                    store.append_console(session.id, ConsoleLine(kind="stdout", content=str(i)))
                with store.batch():
                    store.append_message(session.id, Message(role="assistant", content="done"))
                self.assertEqual(0, storage.writes)

            # sessions payload plus the active id
            self.assertEqual(2, storage.writes)
            self.assertEqual(10, len(SessionStore(storage).get_session(session.id).console))
        finally:
            storage.close()

    def test_persistence_failure_keeps_memory_state(self) -> None:
        storage = _BrokenStorage(":memory:")
        try:
            store = SessionStore(storage)
            session = store.create_session("Still works")
            self.assertTrue(store.append_message(session.id, Message(role="user", content="hi")))
            self.assertEqual(1, len(store.get_session(session.id).messages))
        finally:
            storage.close()

    def test_corrupt_storage_starts_empty(self) -> None:
        self._storage.set_item(SESSIONS_KEY, "{not json")
        self.assertEqual([], SessionStore(self._storage).list_sessions())

        self._storage.set_item(SESSIONS_KEY, '{"id": "not-a-list"}')
        self.assertEqual([], SessionStore(self._storage).list_sessions())

    def test_unreadable_entries_are_skipped(self) -> None:
        good = make_session("s-good", datetime(2026, 1, 1, tzinfo=UTC))
        self._storage.set_item(SESSIONS_KEY, f'[{{"id": "s-bad"}}, {json.dumps(good.to_dict())}]')
        store = SessionStore(self._storage)
        self.assertEqual(["s-good"], [s.id for s in store.list_sessions()])

    def test_build_session_summary(self) -> None:
        session = self._store.create_session("Summary")
        self._store.append_message(session.id, Message(role="user", content="first   question"))
        self._store.append_message(session.id, Message(role="assistant", content="x" * 200))
        self._store.append_message(session.id, Message(role="user", content="second"))
        self._store.append_message(session.id, Message(role="system", content="failed"))
        self._store.append_console(session.id, ConsoleLine(kind="info", content="==="))

        summary = self._store.build_session_summary(session.id)
        self.assertEqual("Summary", summary["title"])
        self.assertEqual(4, summary["message_count"])
        self.assertEqual(2, summary["user_message_count"])
        self.assertEqual(1, summary["assistant_message_count"])
        self.assertEqual(1, summary["system_message_count"])
        self.assertEqual(1, summary["console_line_count"])
        self.assertEqual("second", summary["last_user_preview"])
        self.assertEqual(140, len(summary["last_assistant_preview"]))
        self.assertTrue(summary["last_assistant_preview"].endswith("..."))

        with self.assertRaises(ValueError):
            self._store.build_session_summary("session-missing")


if __name__ == "__main__":
    unittest.main()
