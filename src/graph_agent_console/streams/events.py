from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime

from loguru import logger

OUTPUT_KINDS = ("stdout", "stderr")


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class OutputEvent:
    stream_id: str
    kind: str
    lines: tuple[str, ...]
    timestamp: str = ""


@dataclass(frozen=True)
class ExitEvent:
    stream_id: str
    code: int
    timestamp: str = ""


@dataclass(frozen=True)
class ErrorEvent:
    stream_id: str
    error: str
    timestamp: str = ""


ChannelEvent = OutputEvent | ExitEvent | ErrorEvent


def encode_request(event: str, stream_id: str) -> str:
    return json.dumps({"event": event, "streamId": stream_id}, ensure_ascii=True)


def parse_frame(raw: str | bytes) -> ChannelEvent | None:
    """Decode one inbound frame. Returns None for frames that carry no stream event."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as ex:
        logger.warning(f"Dropping undecodable channel frame: {ex}")
        return None
    if not isinstance(payload, dict):
        logger.warning(f"Dropping channel frame that is not an object: {type(payload).__name__}")
        return None

    name = payload.get("event")
    stream_id = payload.get("streamId") or payload.get("processId")
    if not stream_id:
        logger.debug(f"Ignoring channel frame without stream id: event={name!r}")
        return None
    stream_id = str(stream_id)
    timestamp = str(payload.get("timestamp") or utc_timestamp())

    if name == "output":
        data = payload.get("data", [])
        lines = data if isinstance(data, list) else [data]
        kind = "stderr" if payload.get("type") == "stderr" else "stdout"
        return OutputEvent(
            stream_id=stream_id,
            kind=kind,
            lines=tuple("" if line is None else str(line) for line in lines),
            timestamp=timestamp,
        )
    if name == "exit":
        try:
            code = int(payload.get("code", -1))
        except (TypeError, ValueError):
            code = -1
        return ExitEvent(stream_id=stream_id, code=code, timestamp=timestamp)
    if name == "error":
        error = str(payload.get("error") or "Process error occurred")
        return ErrorEvent(stream_id=stream_id, error=error, timestamp=timestamp)

    logger.debug(f"Ignoring channel frame with unknown event {name!r}")
    return None
