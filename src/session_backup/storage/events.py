from __future__ import annotations

import json
from datetime import UTC, datetime
from uuid import uuid4

from session_backup.storage.database import Database


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def epoch_millis() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


class EventEmitter:
    def __init__(self, db: Database):
        self._db = db

    def emit(self, user_id: int, event_type: str, payload: dict) -> None:
        with self._db.transaction():
            self._db.execute(
                """
                INSERT INTO events (id, user_id, type, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    str(uuid4()),
                    user_id,
                    event_type,
                    json.dumps(payload, ensure_ascii=False),
                    utc_now(),
                ),
            )

    def list_events(self, user_id: int, *, event_type: str | None = None) -> list[dict]:
        if event_type is None:
            rows = self._db.execute(
                "SELECT type, payload_json, created_at FROM events WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
                (user_id,),
            ).fetchall()
        else:
            rows = self._db.execute(
                """
                SELECT type, payload_json, created_at
                FROM events
                WHERE user_id = ? AND type = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (user_id, event_type),
            ).fetchall()
        return [
            {"type": row["type"], "payload": json.loads(row["payload_json"]), "created_at": row["created_at"]}
            for row in rows
        ]
