from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

MESSAGE_ROLES = ("user", "assistant", "system")
CONSOLE_KINDS = ("stdout", "stderr", "info")


def utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.role not in MESSAGE_ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=str(data["role"]),
            content=str(data.get("content", "")),
            timestamp=_parse_timestamp(data["timestamp"]),
        )


@dataclass(frozen=True)
class ConsoleLine:
    kind: str
    content: str
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.kind not in CONSOLE_KINDS:
            raise ValueError(f"Unknown console line kind: {self.kind!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "content": self.content, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsoleLine:
        return cls(
            kind=str(data["type"]),
            content=str(data.get("content", "")),
            timestamp=_parse_timestamp(data["timestamp"]),
        )


@dataclass
class Session:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: list[Message] = field(default_factory=list)
    console: list[ConsoleLine] = field(default_factory=list)

    def snapshot(self) -> Session:
        return replace(self, messages=list(self.messages), console=list(self.console))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "consoleOutput": [c.to_dict() for c in self.console],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            created_at=_parse_timestamp(data["createdAt"]),
            updated_at=_parse_timestamp(data["updatedAt"]),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            console=[ConsoleLine.from_dict(c) for c in data.get("consoleOutput", [])],
        )
