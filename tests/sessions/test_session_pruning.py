from datetime import timedelta

from graph_agent_console.sessions import prune_sessions
from graph_agent_console.sessions.models import utc_now
from tests.sessions.base import SessionStoreTestCase, make_session


class PruneSessionsTests(SessionStoreTestCase):
    def test_retention_removes_stale_sessions(self) -> None:
        now = utc_now()
        store = self._seed(
            make_session("fresh", now - timedelta(days=1)),
            make_session("stale", now - timedelta(days=40)),
        )
        removed = prune_sessions(store, max_sessions=0, retention_days=30)

        self.assertEqual(["stale"], removed)
        self.assertEqual(["fresh"], [s.id for s in store.list_sessions()])

    def test_max_sessions_keeps_most_recent(self) -> None:
        now = utc_now()
        store = self._seed(*[make_session(f"s{i}", now - timedelta(hours=i)) for i in range(5)])
        removed = prune_sessions(store, max_sessions=2, retention_days=0)

        self.assertEqual(["s2", "s3", "s4"], removed)
        self.assertEqual(["s0", "s1"], [s.id for s in self._reopen().list_sessions()])

    def test_zero_limits_disable_pruning(self) -> None:
        now = utc_now()
        store = self._seed(make_session("ancient", now - timedelta(days=3650)))
        self.assertEqual([], prune_sessions(store, max_sessions=0, retention_days=0))
        self.assertEqual(1, len(store.list_sessions()))

    def test_rules_combine_without_double_counting(self) -> None:
        now = utc_now()
        store = self._seed(
            make_session("a", now),
            make_session("b", now - timedelta(days=1)),
            make_session("c", now - timedelta(days=2)),
            make_session("old", now - timedelta(days=90)),
        )
        removed = prune_sessions(store, max_sessions=2, retention_days=30)
        self.assertEqual(["old", "c"], removed)
        self.assertEqual(["a", "b"], [s.id for s in store.list_sessions()])
