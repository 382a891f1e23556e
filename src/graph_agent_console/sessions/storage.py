from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


class LocalStorage:
    """Durable string key/value storage backed by a single sqlite file."""

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._transaction_depth = 0
        self._initialize_schema()

    @property
    def path(self) -> str:
        return self._db_path

    def close(self) -> None:
        self._conn.close()

    def get_item(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ? LIMIT 1", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_item(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO kv (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
        self._maybe_commit()

    def remove_item(self, key: str) -> None:
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self._maybe_commit()

    def keys(self) -> list[str]:
        rows = self._conn.execute("SELECT key FROM kv ORDER BY key ASC").fetchall()
        return [str(row["key"]) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit every write made inside the block together, or none of them."""
        self._transaction_depth += 1
        try:
            yield
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                self._conn.rollback()
            raise
        self._transaction_depth -= 1
        self._maybe_commit()

    def _maybe_commit(self) -> None:
        if self._transaction_depth == 0:
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
            """
        )
        self._conn.commit()
