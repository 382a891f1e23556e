from __future__ import annotations

from graph_agent_console.sessions.models import ConsoleLine, Message, Session


class SessionController:
    def __init__(self, *, line_prefix: str, short_id_len: int = 8):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len

    def short_id(self, value: str) -> str:
        # ids look like session-<ms>-<hex>; the random tail is the distinctive part
        tail = value.rsplit("-", 1)[-1]
        if len(tail) <= self._short_id_len:
            return tail
        return tail[: self._short_id_len]

    def format_session_list_entry(self, session: Session, *, active_session_id: str | None) -> str:
        marker = "*" if session.id == active_session_id else " "
        return (
            f"{self._line_prefix}{marker} {session.title} [{self.short_id(session.id)}] (id={session.id}) "
            f"(messages={len(session.messages)}, console={len(session.console)}, "
            f"created={session.created_at.isoformat(timespec='seconds')}, "
            f"updated={session.updated_at.isoformat(timespec='seconds')})"
        )

    def format_summary_lines(self, summary: dict) -> list[str]:
        lines = [f"{self._line_prefix}Session summary:"]
        lines.append(
            f"{self._line_prefix}- Created: {summary['created_at']} | "
            f"Updated: {summary['updated_at']}"
        )
        lines.append(
            f"{self._line_prefix}- Messages: {summary['message_count']} "
            f"(user={summary['user_message_count']}, assistant={summary['assistant_message_count']}, "
            f"system={summary['system_message_count']})"
        )
        lines.append(f"{self._line_prefix}- Console lines: {summary['console_line_count']}")
        last_user = summary.get("last_user_preview", "")
        if last_user:
            lines.append(f"{self._line_prefix}- Last user: {last_user}")
        last_assistant = summary.get("last_assistant_preview", "")
        if last_assistant:
            lines.append(f"{self._line_prefix}- Last assistant: {last_assistant}")
        return lines

    def format_message(self, message: Message) -> str:
        return f"{self._line_prefix}[{message.role}] {message.content}"

    def format_console_line(self, line: ConsoleLine) -> str:
        stamp = line.timestamp.strftime("%H:%M:%S")
        return f"{stamp} {line.kind:<6} | {line.content}"
