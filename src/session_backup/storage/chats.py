from __future__ import annotations

import json
import sqlite3
from dataclasses import replace

from session_backup.storage.database import Database
from session_backup.storage.events import utc_now
from session_backup.storage.models import ChatRecord, GroupChatRecord, GroupMemberRecord


def _parse_json_object(raw: str | None) -> dict:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class ChatStore:
    """One-on-one chats, always addressed through their owning user."""

    kind = "chat"
    _table = "chats"

    def __init__(self, db: Database):
        self._db = db

    def find_owned(self, owner_id: int, chat_id: int) -> ChatRecord | None:
        row = self._db.execute(
            "SELECT * FROM chats WHERE id = ? AND user_id = ? LIMIT 1",
            (chat_id, owner_id),
        ).fetchone()
        return self._to_record(row) if row is not None else None

    def create(self, fields: dict) -> ChatRecord:
        return ChatRecord(id=None, **fields)

    def save(self, chat: ChatRecord) -> ChatRecord:
        now = utc_now()
        metadata_json = json.dumps(chat.chat_metadata or {}, ensure_ascii=False)
        if chat.id is None:
            created_at = chat.created_at or now
            cursor = self._db.execute(
                """
                INSERT INTO chats (
                    user_id, novel_id, chat_name, character_card_id, category_id, character_name,
                    user_persona_name, chat_metadata_json, message_count, last_message_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chat.user_id,
                    chat.novel_id,
                    chat.chat_name,
                    chat.character_card_id,
                    chat.category_id,
                    chat.character_name,
                    chat.user_persona_name,
                    metadata_json,
                    chat.message_count,
                    chat.last_message_at,
                    created_at,
                    now,
                ),
            )
            return replace(chat, id=int(cursor.lastrowid), created_at=created_at, updated_at=now)

        self._db.execute(
            """
            UPDATE chats
            SET novel_id = ?, chat_name = ?, character_card_id = ?, category_id = ?, character_name = ?,
                user_persona_name = ?, chat_metadata_json = ?, message_count = ?, last_message_at = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                chat.novel_id,
                chat.chat_name,
                chat.character_card_id,
                chat.category_id,
                chat.character_name,
                chat.user_persona_name,
                metadata_json,
                chat.message_count,
                chat.last_message_at,
                now,
                chat.id,
            ),
        )
        return replace(chat, updated_at=now)

    def summarize(self, owner_id: int, *, active_since: str) -> tuple[int, int, int]:
        """(sessions, messages, sessions with a message at or after ``active_since``)."""
        row = self._db.execute(
            f"""
            SELECT COUNT(id) AS total,
                   COALESCE(SUM(message_count), 0) AS messages,
                   COUNT(CASE WHEN last_message_at >= ? THEN 1 END) AS active
            FROM {self._table}
            WHERE user_id = ?
            """,
            (active_since, owner_id),
        ).fetchone()
        return int(row["total"]), int(row["messages"]), int(row["active"])

    def list_recent(self, owner_id: int, *, limit: int = 10, query: str | None = None) -> list[ChatRecord]:
        if query:
            pattern = _like_pattern(query)
            rows = self._db.execute(
                """
                SELECT * FROM chats
                WHERE user_id = ?
                  AND (chat_name LIKE ? ESCAPE '\\' OR character_name LIKE ? ESCAPE '\\')
                ORDER BY last_message_at IS NULL, last_message_at DESC, id DESC
                LIMIT ?
                """,
                (owner_id, pattern, pattern, max(1, limit)),
            ).fetchall()
        else:
            rows = self._db.execute(
                """
                SELECT * FROM chats
                WHERE user_id = ? AND last_message_at IS NOT NULL
                ORDER BY last_message_at DESC, id DESC
                LIMIT ?
                """,
                (owner_id, max(1, limit)),
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def _to_record(self, row: sqlite3.Row) -> ChatRecord:
        return ChatRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            chat_name=row["chat_name"],
            novel_id=row["novel_id"],
            character_card_id=row["character_card_id"],
            category_id=row["category_id"],
            character_name=row["character_name"],
            user_persona_name=row["user_persona_name"],
            chat_metadata=_parse_json_object(row["chat_metadata_json"]),
            message_count=int(row["message_count"]),
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class GroupChatStore:
    """Group chats; members are stored and loaded together with the header."""

    kind = "group"
    _table = "group_chats"

    def __init__(self, db: Database):
        self._db = db

    def find_owned(self, owner_id: int, group_id: int) -> GroupChatRecord | None:
        row = self._db.execute(
            "SELECT * FROM group_chats WHERE id = ? AND user_id = ? LIMIT 1",
            (group_id, owner_id),
        ).fetchone()
        return self._to_record(row) if row is not None else None

    def create(self, fields: dict) -> GroupChatRecord:
        fields = dict(fields)
        members = tuple(
            member if isinstance(member, GroupMemberRecord) else GroupMemberRecord(**member)
            for member in fields.pop("members", ())
        )
        return GroupChatRecord(id=None, members=members, **fields)

    def save(self, group: GroupChatRecord) -> GroupChatRecord:
        now = utc_now()
        metadata_json = json.dumps(group.group_metadata or {}, ensure_ascii=False)
        if group.id is None:
            created_at = group.created_at or now
            cursor = self._db.execute(
                """
                INSERT INTO group_chats (
                    user_id, group_name, description, avatar_url, group_metadata_json,
                    message_count, last_message_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    group.user_id,
                    group.group_name,
                    group.description,
                    group.avatar_url,
                    metadata_json,
                    group.message_count,
                    group.last_message_at,
                    created_at,
                    now,
                ),
            )
            saved = replace(group, id=int(cursor.lastrowid), created_at=created_at, updated_at=now)
        else:
            self._db.execute(
                """
                UPDATE group_chats
                SET group_name = ?, description = ?, avatar_url = ?, group_metadata_json = ?,
                    message_count = ?, last_message_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    group.group_name,
                    group.description,
                    group.avatar_url,
                    metadata_json,
                    group.message_count,
                    group.last_message_at,
                    now,
                    group.id,
                ),
            )
            self._db.execute("DELETE FROM group_members WHERE group_id = ?", (group.id,))
            saved = replace(group, updated_at=now)

        if saved.members:
            self._db.executemany(
                """
                INSERT INTO group_members (group_id, character_card_id, character_name, avatar_url, display_order)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (saved.id, m.character_card_id, m.character_name, m.avatar_url, m.display_order)
                    for m in saved.members
                ],
            )
        return saved

    def summarize(self, owner_id: int, *, active_since: str) -> tuple[int, int, int]:
        """(sessions, messages, sessions with a message at or after ``active_since``)."""
        row = self._db.execute(
            f"""
            SELECT COUNT(id) AS total,
                   COALESCE(SUM(message_count), 0) AS messages,
                   COUNT(CASE WHEN last_message_at >= ? THEN 1 END) AS active
            FROM {self._table}
            WHERE user_id = ?
            """,
            (active_since, owner_id),
        ).fetchone()
        return int(row["total"]), int(row["messages"]), int(row["active"])

    def list_recent(self, owner_id: int, *, limit: int = 10, query: str | None = None) -> list[GroupChatRecord]:
        if query:
            pattern = _like_pattern(query)
            rows = self._db.execute(
                """
                SELECT * FROM group_chats
                WHERE user_id = ?
                  AND (group_name LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')
                ORDER BY last_message_at IS NULL, last_message_at DESC, id DESC
                LIMIT ?
                """,
                (owner_id, pattern, pattern, max(1, limit)),
            ).fetchall()
        else:
            rows = self._db.execute(
                """
                SELECT * FROM group_chats
                WHERE user_id = ? AND last_message_at IS NOT NULL
                ORDER BY last_message_at DESC, id DESC
                LIMIT ?
                """,
                (owner_id, max(1, limit)),
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def _load_members(self, group_id: int) -> tuple[GroupMemberRecord, ...]:
        rows = self._db.execute(
            """
            SELECT character_card_id, character_name, avatar_url, display_order
            FROM group_members
            WHERE group_id = ?
            ORDER BY display_order ASC, id ASC
            """,
            (group_id,),
        ).fetchall()
        return tuple(
            GroupMemberRecord(
                character_name=row["character_name"],
                character_card_id=row["character_card_id"],
                avatar_url=row["avatar_url"],
                display_order=int(row["display_order"]),
            )
            for row in rows
        )

    def _to_record(self, row: sqlite3.Row) -> GroupChatRecord:
        group_id = int(row["id"])
        return GroupChatRecord(
            id=group_id,
            user_id=int(row["user_id"]),
            group_name=row["group_name"],
            description=row["description"],
            avatar_url=row["avatar_url"],
            group_metadata=_parse_json_object(row["group_metadata_json"]),
            message_count=int(row["message_count"]),
            last_message_at=row["last_message_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            members=self._load_members(group_id),
        )
