from __future__ import annotations

from datetime import timedelta

from loguru import logger

from graph_agent_console.sessions.models import utc_now
from graph_agent_console.sessions.session_store import SessionStore


def prune_sessions(
    store: SessionStore,
    *,
    max_sessions: int,
    retention_days: int,
) -> list[str]:
    """Delete stale sessions. A limit of 0 disables that rule. Returns the removed ids."""
    removed: list[str] = []
    sessions = store.list_sessions()

    if retention_days > 0:
        cutoff = utc_now() - timedelta(days=retention_days)
        for session in sessions:
            if session.updated_at < cutoff:
                removed.append(session.id)

    if max_sessions > 0:
        kept = [s for s in sessions if s.id not in removed]
        removed.extend(s.id for s in kept[max_sessions:])

    if removed:
        with store.batch():
            for session_id in removed:
                store.delete(session_id)
        logger.info(f"Pruned {len(removed)} session(s)")
    return removed
