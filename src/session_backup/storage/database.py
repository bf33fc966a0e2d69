from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class Database:
    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._depth = 0
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit everything written inside the block, or roll all of it back.

        Nested blocks join the outermost one.
        """
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._conn.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                novel_id INTEGER NULL,
                chat_name TEXT NULL,
                character_card_id INTEGER NULL,
                category_id INTEGER NULL,
                character_name TEXT NULL,
                user_persona_name TEXT NULL,
                chat_metadata_json TEXT NOT NULL DEFAULT '{}',
                message_count INTEGER NOT NULL DEFAULT 0,
                last_message_at TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_chats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                group_name TEXT NOT NULL,
                description TEXT NULL,
                avatar_url TEXT NULL,
                group_metadata_json TEXT NOT NULL DEFAULT '{}',
                message_count INTEGER NOT NULL DEFAULT 0,
                last_message_at TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                group_id INTEGER NOT NULL REFERENCES group_chats(id) ON DELETE CASCADE,
                character_card_id INTEGER NULL,
                character_name TEXT NOT NULL,
                avatar_url TEXT NULL,
                display_order INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id INTEGER NULL REFERENCES chats(id) ON DELETE CASCADE,
                group_chat_id INTEGER NULL REFERENCES group_chats(id) ON DELETE CASCADE,
                mes_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                is_user INTEGER NOT NULL CHECK (is_user IN (0, 1)),
                mes TEXT NOT NULL,
                send_date INTEGER NOT NULL,
                message_type TEXT NOT NULL DEFAULT 'normal',
                is_system INTEGER NOT NULL DEFAULT 0 CHECK (is_system IN (0, 1)),
                is_name INTEGER NOT NULL DEFAULT 0 CHECK (is_name IN (0, 1)),
                force_avatar TEXT NULL,
                swipe_id INTEGER NOT NULL DEFAULT 0,
                gen_started INTEGER NULL,
                gen_finished INTEGER NULL,
                gen_id TEXT NULL,
                api TEXT NULL,
                model TEXT NULL,
                extra_json TEXT NOT NULL DEFAULT '{}',
                CHECK (
                    (chat_id IS NOT NULL AND group_chat_id IS NULL)
                    OR (chat_id IS NULL AND group_chat_id IS NOT NULL)
                )
            );

            CREATE TABLE IF NOT EXISTS swipes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                swipe_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                send_date INTEGER NOT NULL,
                gen_started INTEGER NULL,
                gen_finished INTEGER NULL,
                gen_id TEXT NULL,
                extra_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chats_user_created
                ON chats(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_group_chats_user_created
                ON group_chats(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_group_members_group
                ON group_members(group_id, display_order);
            CREATE INDEX IF NOT EXISTS idx_messages_chat_send
                ON messages(chat_id, send_date);
            CREATE INDEX IF NOT EXISTS idx_messages_group_send
                ON messages(group_chat_id, send_date);
            CREATE INDEX IF NOT EXISTS idx_swipes_message_index
                ON swipes(message_id, swipe_index);
            CREATE INDEX IF NOT EXISTS idx_events_user_created
                ON events(user_id, created_at);
            """
        )
        self._conn.commit()
