import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

STREAMS_LOGGER = "graph_agent_console.streams"

# Records logged with logger.bind(stream_id=...) show the id; everything else shows "-".
_NO_STREAM = "-"

_CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{extra[stream_id]}</cyan> | <level>{message}</level>"
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | stream={extra[stream_id]} | "
    "{name}:{function}:{line} - {message}"
)


def stream_chatter_filter(streams_level: str | None) -> Callable[[dict], bool] | None:
    """Build a sink filter that holds records from the channel package to ``streams_level``.

    The channel logs every frame, subscribe and retry. Sinks that share the
    terminal with the prompt only want its failures.
    """
    if not streams_level:
        return None
    threshold = logger.level(streams_level.upper()).no

    def _filter(record: dict) -> bool:
        if record["name"].startswith(STREAMS_LOGGER):
            return record["level"].no >= threshold
        return True

    return _filter


class _SinkConsumer:
    def __init__(self, streams_level: str | None = None):
        self._streams_level = streams_level.upper() if streams_level else None

    def _levels(self, level: str) -> str:
        if self._streams_level:
            return f"{level}, streams {self._streams_level}"
        return level


class ConsoleLogConsumer(_SinkConsumer):
    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format=_CONSOLE_FORMAT,
            filter=stream_chatter_filter(self._streams_level),
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {self._levels(level)})"


class FileLogConsumer(_SinkConsumer):
    def __init__(
        self,
        path: str = "graph_agent.log",
        rotation: str = "10 MB",
        retention: int = 3,
        streams_level: str | None = None,
    ):
        super().__init__(streams_level)
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        # The channel reader and the input thread both log; enqueue serializes writes.
        logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            filter=stream_chatter_filter(self._streams_level),
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {self._levels(level)})"


_CONSUMER_TYPES: dict[str, type[_SinkConsumer]] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# Retries are already announced on the prompt by the connection indicator.
_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING", "streams_level": "ERROR"},
    {"type": "file", "path": "graph_agent.log"},
]


def _build_consumer(config: dict[str, Any]) -> _SinkConsumer | None:
    sink_type = config.get("type", "")
    cls = _CONSUMER_TYPES.get(sink_type)
    if cls is None:
        logger.warning(f"Unknown log consumer type: {sink_type!r}")
        return None
    options = {k: v for k, v in config.items() if k not in ("type", "level")}
    try:
        return cls(**options)
    except (TypeError, ValueError) as ex:
        logger.warning(f"Invalid options for log consumer {sink_type!r}: {ex}")
        return None


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's sinks with the configured consumers and describe each one."""
    logger.remove()
    logger.configure(extra={"stream_id": _NO_STREAM})

    descriptions: list[str] = []
    for config in _DEFAULT_CONSUMERS if consumers is None else consumers:
        consumer = _build_consumer(config)
        if consumer is None:
            continue
        sink_level = config.get("level", level)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))
    return descriptions
