from __future__ import annotations

import json
import sqlite3
from dataclasses import replace

from session_backup.storage.database import Database
from session_backup.storage.models import MessageRecord, SwipeRecord

_SESSION_COLUMNS = {
    "chat": "chat_id",
    "group": "group_chat_id",
}

# Keeps each IN (...) clause under SQLite's host parameter limit.
_ID_CHUNK_SIZE = 500


def _session_column(kind: str) -> str:
    column = _SESSION_COLUMNS.get(kind)
    if column is None:
        raise ValueError(f"Unknown session kind: {kind!r}")
    return column


def _loads(raw: str | None) -> dict:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class MessageStore:
    def __init__(self, db: Database):
        self._db = db

    def find_by_session(self, kind: str, session_id: int) -> list[MessageRecord]:
        """Messages of one session in sequence order (send_date, then id)."""
        column = _session_column(kind)
        rows = self._db.execute(
            f"SELECT * FROM messages WHERE {column} = ? ORDER BY send_date ASC, id ASC",
            (session_id,),
        ).fetchall()
        return [self._to_record(row) for row in rows]

    def find_by_id(self, message_id: int) -> MessageRecord | None:
        row = self._db.execute("SELECT * FROM messages WHERE id = ? LIMIT 1", (message_id,)).fetchone()
        return self._to_record(row) if row is not None else None

    def find_last(self, kind: str, session_id: int) -> MessageRecord | None:
        column = _session_column(kind)
        row = self._db.execute(
            f"SELECT * FROM messages WHERE {column} = ? ORDER BY send_date DESC, id DESC LIMIT 1",
            (session_id,),
        ).fetchone()
        return self._to_record(row) if row is not None else None

    def save(self, messages: list[MessageRecord]) -> list[MessageRecord]:
        """Insert new rows / update existing ones.

        The returned list is index-aligned with the input list.
        """
        saved: list[MessageRecord] = []
        for message in messages:
            params = (
                message.chat_id,
                message.group_chat_id,
                message.mes_id,
                message.name,
                1 if message.is_user else 0,
                message.mes,
                message.send_date,
                message.message_type,
                1 if message.is_system else 0,
                1 if message.is_name else 0,
                message.force_avatar,
                message.swipe_id,
                message.gen_started,
                message.gen_finished,
                message.gen_id,
                message.api,
                message.model,
                json.dumps(message.extra or {}, ensure_ascii=False),
            )
            if message.id is None:
                cursor = self._db.execute(
                    """
                    INSERT INTO messages (
                        chat_id, group_chat_id, mes_id, name, is_user, mes, send_date, message_type,
                        is_system, is_name, force_avatar, swipe_id, gen_started, gen_finished, gen_id,
                        api, model, extra_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
                saved.append(replace(message, id=int(cursor.lastrowid)))
            else:
                self._db.execute(
                    """
                    UPDATE messages
                    SET chat_id = ?, group_chat_id = ?, mes_id = ?, name = ?, is_user = ?, mes = ?,
                        send_date = ?, message_type = ?, is_system = ?, is_name = ?, force_avatar = ?,
                        swipe_id = ?, gen_started = ?, gen_finished = ?, gen_id = ?, api = ?, model = ?,
                        extra_json = ?
                    WHERE id = ?
                    """,
                    (*params, message.id),
                )
                saved.append(message)
        return saved

    def _to_record(self, row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            id=int(row["id"]),
            chat_id=row["chat_id"],
            group_chat_id=row["group_chat_id"],
            mes_id=int(row["mes_id"]),
            name=row["name"],
            is_user=bool(row["is_user"]),
            mes=row["mes"],
            send_date=int(row["send_date"]),
            message_type=row["message_type"],
            is_system=bool(row["is_system"]),
            is_name=bool(row["is_name"]),
            force_avatar=row["force_avatar"],
            swipe_id=int(row["swipe_id"]),
            gen_started=row["gen_started"],
            gen_finished=row["gen_finished"],
            gen_id=row["gen_id"],
            api=row["api"],
            model=row["model"],
            extra=_loads(row["extra_json"]),
        )


class SwipeStore:
    def __init__(self, db: Database):
        self._db = db

    def find_by_message_ids(self, message_ids: list[int]) -> list[SwipeRecord]:
        """Swipes of the given messages ordered by (message_id, swipe_index)."""
        ids = list(dict.fromkeys(message_ids))
        records: list[SwipeRecord] = []
        for start in range(0, len(ids), _ID_CHUNK_SIZE):
            chunk = ids[start : start + _ID_CHUNK_SIZE]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self._db.execute(
                f"SELECT * FROM swipes WHERE message_id IN ({placeholders})",
                tuple(chunk),
            ).fetchall()
            records.extend(self._to_record(row) for row in rows)
        records.sort(key=lambda s: (s.message_id, s.swipe_index, s.id))
        return records

    def find_by_message(self, message_id: int) -> list[SwipeRecord]:
        return self.find_by_message_ids([message_id])

    def save(self, swipes: list[SwipeRecord]) -> list[SwipeRecord]:
        saved: list[SwipeRecord] = []
        for swipe in swipes:
            params = (
                swipe.message_id,
                swipe.swipe_index,
                swipe.content,
                swipe.send_date,
                swipe.gen_started,
                swipe.gen_finished,
                swipe.gen_id,
                json.dumps(swipe.extra or {}, ensure_ascii=False),
            )
            if swipe.id is None:
                cursor = self._db.execute(
                    """
                    INSERT INTO swipes (
                        message_id, swipe_index, content, send_date, gen_started, gen_finished, gen_id, extra_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params,
                )
                saved.append(replace(swipe, id=int(cursor.lastrowid)))
            else:
                self._db.execute(
                    """
                    UPDATE swipes
                    SET message_id = ?, swipe_index = ?, content = ?, send_date = ?, gen_started = ?,
                        gen_finished = ?, gen_id = ?, extra_json = ?
                    WHERE id = ?
                    """,
                    (*params, swipe.id),
                )
                saved.append(swipe)
        return saved

    def delete(self, swipe_id: int) -> None:
        self._db.execute("DELETE FROM swipes WHERE id = ?", (swipe_id,))

    def _to_record(self, row: sqlite3.Row) -> SwipeRecord:
        return SwipeRecord(
            id=int(row["id"]),
            message_id=int(row["message_id"]),
            swipe_index=int(row["swipe_index"]),
            content=row["content"],
            send_date=int(row["send_date"]),
            gen_started=row["gen_started"],
            gen_finished=row["gen_finished"],
            gen_id=row["gen_id"],
            extra=_loads(row["extra_json"]),
        )
