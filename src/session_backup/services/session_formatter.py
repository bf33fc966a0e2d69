from __future__ import annotations

from session_backup.backup.snapshot import BackupSnapshot


class SessionFormatter:
    def __init__(self, *, line_prefix: str = "", preview_chars: int = 60):
        self._line_prefix = line_prefix
        self._preview_chars = preview_chars

    def preview(self, text: str) -> str:
        text = " ".join(text.split())
        if len(text) <= self._preview_chars:
            return text
        return text[: self._preview_chars - 3] + "..."

    def format_session_list_entry(self, session: dict) -> str:
        last_message = session.get("last_message", "")
        preview_text = f', last="{self.preview(last_message)}"' if last_message else ""
        return (
            f"{self._line_prefix}[{session['type']}:{session['id']}] {session['name']} "
            f"(messages={session['message_count']}, last_message_at={session['last_message_at'] or '-'}"
            f"{preview_text})"
        )

    def format_backup_summary_lines(self, snapshot: BackupSnapshot) -> list[str]:
        header = snapshot.data.get(snapshot.type) or {}
        name = header.get("chatName") or header.get("groupName") or "-"
        lines = [f"{self._line_prefix}Backup of {snapshot.type} {header.get('id', '?')} ({name}):"]
        lines.append(f"{self._line_prefix}- Version: {snapshot.version} | Timestamp: {snapshot.timestamp}")
        lines.append(
            f"{self._line_prefix}- Messages: {len(snapshot.data.get('messages') or [])} | "
            f"Swipes: {len(snapshot.data.get('swipes') or [])}"
        )
        lines.append(f"{self._line_prefix}- Integrity: {snapshot.integrity}")
        return lines
