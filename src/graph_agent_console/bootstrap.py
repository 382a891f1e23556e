from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from graph_agent_console.app_config import AppConfig, RuntimeEnv
from graph_agent_console.console import AgentConsole
from graph_agent_console.correlation import CorrelationRouter, SalienceClassifier
from graph_agent_console.launcher import HttpProcessLauncher
from graph_agent_console.logging_config import setup_logging
from graph_agent_console.services.query_service import AgentQueryService
from graph_agent_console.sessions import LocalStorage, SessionStore, prune_sessions
from graph_agent_console.streams import OutputChannelManager, ReconnectPolicy, websocket_connector


@dataclass
class AppRuntime:
    console: AgentConsole
    channel: OutputChannelManager
    store: SessionStore
    storage: LocalStorage
    pruned_session_ids: list[str]
    log_descriptions: list[str]


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    storage_path = Path(app.storage_path)
    if not storage_path.is_absolute():
        storage_path = Path.cwd() / storage_path
    storage = LocalStorage(str(storage_path))
    store = SessionStore(storage, max_console_lines=app.max_console_lines)
    pruned = prune_sessions(
        store,
        max_sessions=app.max_sessions,
        retention_days=app.session_retention_days,
    )

    headers = {"Authorization": f"Bearer {env.api_token}"} if env.api_token else None
    channel = OutputChannelManager(
        websocket_connector(app.channel_url, headers=headers),
        max_buffer_lines=app.max_buffer_lines,
        reconnect_policy=ReconnectPolicy(
            base_delay_ms=app.base_reconnect_delay_ms,
            max_delay_ms=app.max_reconnect_delay_ms,
            max_attempts=app.max_reconnect_attempts,
        ),
    )
    router = CorrelationRouter(store, channel, SalienceClassifier(app.salience_markers))
    launcher = HttpProcessLauncher(
        app.backend_url,
        api_token=env.api_token,
        timeout=app.request_timeout_seconds,
    )
    query_service = AgentQueryService(
        store=store,
        launcher=launcher,
        router=router,
        operation=app.agent_operation,
    )
    console = AgentConsole(store=store, channel=channel, router=router, query_service=query_service)

    return AppRuntime(
        console=console,
        channel=channel,
        store=store,
        storage=storage,
        pruned_session_ids=pruned,
        log_descriptions=log_descriptions,
    )
