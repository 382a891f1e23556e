from graph_agent_console.sessions.models import ConsoleLine, Message, Session
from graph_agent_console.sessions.pruning import prune_sessions
from graph_agent_console.sessions.session_store import SessionStore
from graph_agent_console.sessions.storage import LocalStorage

__all__ = [
    "ConsoleLine",
    "LocalStorage",
    "Message",
    "Session",
    "SessionStore",
    "prune_sessions",
]
