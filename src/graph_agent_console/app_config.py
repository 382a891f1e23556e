from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from graph_agent_console.correlation import DEFAULT_SALIENCE_MARKERS
from graph_agent_console.services.query_service import DEFAULT_AGENT_OPERATION
from graph_agent_console.streams.reconnect import (
    DEFAULT_BASE_RECONNECT_DELAY_MS,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_MAX_RECONNECT_DELAY_MS,
)
from graph_agent_console.streams.ring_buffer import MAX_BUFFER_LINES


@dataclass
class RuntimeEnv:
    api_token: str | None


@dataclass
class AppConfig:
    backend_url: str
    channel_url: str
    agent_operation: str
    max_buffer_lines: int
    base_reconnect_delay_ms: int
    max_reconnect_delay_ms: int
    max_reconnect_attempts: int
    storage_path: str
    max_console_lines: int
    max_sessions: int
    session_retention_days: int
    salience_markers: list[str]
    request_timeout_seconds: float
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _default_channel_url(backend_url: str) -> str:
    if backend_url.startswith("https://"):
        return "wss://" + backend_url[len("https://"):] + "/ws"
    if backend_url.startswith("http://"):
        return "ws://" + backend_url[len("http://"):] + "/ws"
    return backend_url + "/ws"


def _positive_int(value: object, default: int) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def parse_app_config(config: dict) -> AppConfig:
    backend_url = str(config.get("BackendUrl", "http://localhost:3001")).strip().rstrip("/")
    markers = config.get("SalienceMarkers")
    return AppConfig(
        backend_url=backend_url,
        channel_url=str(config.get("ChannelUrl") or _default_channel_url(backend_url)).strip(),
        agent_operation=str(config.get("AgentOperation", DEFAULT_AGENT_OPERATION)).strip(),
        max_buffer_lines=_positive_int(config.get("MaxBufferLines"), MAX_BUFFER_LINES),
        base_reconnect_delay_ms=_positive_int(config.get("BaseReconnectDelayMs"), DEFAULT_BASE_RECONNECT_DELAY_MS),
        max_reconnect_delay_ms=_positive_int(config.get("MaxReconnectDelayMs"), DEFAULT_MAX_RECONNECT_DELAY_MS),
        max_reconnect_attempts=_positive_int(config.get("MaxReconnectAttempts"), DEFAULT_MAX_RECONNECT_ATTEMPTS),
        storage_path=str(config.get("StoragePath", ".graph_agent/sessions.db")),
        max_console_lines=int(config.get("MaxConsoleLines", MAX_BUFFER_LINES)),
        max_sessions=int(config.get("MaxSessions", 0)),
        session_retention_days=int(config.get("SessionRetentionDays", 0)),
        salience_markers=[str(m) for m in markers] if isinstance(markers, list) else list(DEFAULT_SALIENCE_MARKERS),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 30)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_token=os.environ.get("GRAPH_AGENT_API_TOKEN") or None,
    )
