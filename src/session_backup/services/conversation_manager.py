from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

from session_backup.errors import SessionNotFoundError
from session_backup.storage.chats import ChatStore, GroupChatStore
from session_backup.storage.database import Database
from session_backup.storage.events import EventEmitter, epoch_millis
from session_backup.storage.models import ChatRecord, GroupChatRecord, MessageRecord, SwipeRecord
from session_backup.storage.messages import MessageStore, SwipeStore

_PREVIEW_CHARS = 400

_ACTIVE_WINDOW = timedelta(days=7)


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def millis_to_iso(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, UTC).isoformat(timespec="seconds")


class ConversationManager:
    def __init__(self, db: Database, events: EventEmitter):
        self._db = db
        self._events = events
        self._chats = ChatStore(db)
        self._groups = GroupChatStore(db)
        self._messages = MessageStore(db)
        self._swipes = SwipeStore(db)

    def create_chat(
        self,
        user_id: int,
        *,
        chat_name: str | None = None,
        character_name: str | None = None,
        character_card_id: int | None = None,
        user_persona_name: str | None = None,
        novel_id: int | None = None,
        category_id: int | None = None,
        metadata: dict | None = None,
    ) -> int:
        with self._db.transaction():
            chat = self._chats.save(
                self._chats.create(
                    {
                        "user_id": user_id,
                        "chat_name": chat_name,
                        "character_name": character_name,
                        "character_card_id": character_card_id,
                        "user_persona_name": user_persona_name,
                        "novel_id": novel_id,
                        "category_id": category_id,
                        "chat_metadata": dict(metadata or {}),
                    }
                )
            )
            self._events.emit(user_id, "session.created", {"type": "chat", "session_id": chat.id})
        return chat.id

    def create_group_chat(
        self,
        user_id: int,
        group_name: str,
        members: list[dict],
        *,
        description: str | None = None,
        avatar_url: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        if not members:
            raise ValueError("群聊至少需要一个成员")
        ordered = [
            {
                "character_name": member["character_name"],
                "character_card_id": member.get("character_card_id"),
                "avatar_url": member.get("avatar_url"),
                "display_order": member.get("display_order", index),
            }
            for index, member in enumerate(members)
        ]
        with self._db.transaction():
            group = self._groups.save(
                self._groups.create(
                    {
                        "user_id": user_id,
                        "group_name": group_name,
                        "description": description,
                        "avatar_url": avatar_url,
                        "group_metadata": dict(metadata or {}),
                        "members": ordered,
                    }
                )
            )
            self._events.emit(user_id, "session.created", {"type": "group", "session_id": group.id})
        return group.id

    def get_session(self, user_id: int, kind: str, session_id: int) -> ChatRecord | GroupChatRecord:
        store = self._groups if kind == "group" else self._chats
        session = store.find_owned(user_id, session_id)
        if session is None:
            raise SessionNotFoundError(kind, session_id)
        return session

    def append_message(
        self,
        user_id: int,
        kind: str,
        session_id: int,
        *,
        name: str,
        is_user: bool,
        mes: str,
        send_date: int | None = None,
        api: str | None = None,
        model: str | None = None,
        gen_id: str | None = None,
        extra: dict | None = None,
    ) -> MessageRecord:
        """Append a message and its first swipe, and bump the session counters."""
        session = self.get_session(user_id, kind, session_id)
        store = self._groups if kind == "group" else self._chats

        message_extra = dict(extra or {})
        message_extra.setdefault("token_count", estimate_tokens(f"{name}: {mes}"))
        sent = send_date if send_date is not None else epoch_millis()

        with self._db.transaction():
            (message,) = self._messages.save(
                [
                    MessageRecord(
                        id=None,
                        chat_id=session_id if kind == "chat" else None,
                        group_chat_id=session_id if kind == "group" else None,
                        mes_id=session.message_count,
                        name=name,
                        is_user=is_user,
                        mes=mes,
                        send_date=sent,
                        gen_id=gen_id,
                        api=api,
                        model=model,
                        extra=message_extra,
                    )
                ]
            )
            self._swipes.save(
                [
                    SwipeRecord(
                        id=None,
                        message_id=message.id,
                        swipe_index=0,
                        content=mes,
                        send_date=sent,
                        gen_id=gen_id,
                        extra=dict(message_extra),
                    )
                ]
            )
            store.save(
                replace(
                    session,
                    message_count=session.message_count + 1,
                    last_message_at=millis_to_iso(sent),
                )
            )
            self._events.emit(
                user_id,
                "message.appended",
                {"type": kind, "session_id": session_id, "message_id": message.id, "mes_id": message.mes_id},
            )
        return message

    def load_messages(self, user_id: int, kind: str, session_id: int) -> list[MessageRecord]:
        self.get_session(user_id, kind, session_id)
        return self._messages.find_by_session(kind, session_id)

    def list_recent_sessions(self, user_id: int, *, limit: int = 10) -> list[dict]:
        sessions = [
            *(self._describe("chat", chat) for chat in self._chats.list_recent(user_id, limit=limit)),
            *(self._describe("group", group) for group in self._groups.list_recent(user_id, limit=limit)),
        ]
        sessions.sort(key=lambda s: s["last_message_at"] or "", reverse=True)
        return sessions[: max(1, limit)]

    def search_sessions(self, user_id: int, query: str) -> list[dict]:
        if not query or not query.strip():
            return self.list_recent_sessions(user_id, limit=20)

        term = query.strip()
        sessions = [
            *(
                self._describe("chat", chat, with_preview=False)
                for chat in self._chats.list_recent(user_id, limit=20, query=term)
            ),
            *(
                self._describe("group", group, with_preview=False)
                for group in self._groups.list_recent(user_id, limit=20, query=term)
            ),
        ]
        # Sessions without any message sort last.
        sessions.sort(key=lambda s: (s["last_message_at"] is not None, s["last_message_at"] or ""), reverse=True)
        return sessions

    def get_session_stats(self, user_id: int, *, now: datetime | None = None) -> dict:
        """Totals across chats and group chats; a session is active if it had a
        message in the last seven days."""
        active_since = ((now or datetime.now(UTC)) - _ACTIVE_WINDOW).isoformat(timespec="seconds")
        chats, chat_messages, active_chats = self._chats.summarize(user_id, active_since=active_since)
        groups, group_messages, active_groups = self._groups.summarize(user_id, active_since=active_since)
        return {
            "total_chats": chats,
            "total_groups": groups,
            "total_messages": chat_messages + group_messages,
            "active_sessions": active_chats + active_groups,
        }

    def _describe(self, kind: str, session: ChatRecord | GroupChatRecord, *, with_preview: bool = True) -> dict:
        summary = {
            "id": session.id,
            "type": kind,
            "name": session.display_name,
            "message_count": session.message_count,
            "last_message_at": session.last_message_at,
            "created_at": session.created_at,
        }
        if isinstance(session, ChatRecord):
            summary["character_name"] = session.character_name
            summary["character_card_id"] = session.character_card_id
        else:
            summary["avatar_url"] = session.avatar_url
        if with_preview:
            summary["last_message"] = self._preview(kind, session.id)
        return summary

    def _preview(self, kind: str, session_id: int) -> str:
        last = self._messages.find_last(kind, session_id)
        if last is None:
            return ""
        content = last.mes
        if len(content) > _PREVIEW_CHARS:
            return "..." + content[-_PREVIEW_CHARS:]
        return content
