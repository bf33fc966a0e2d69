import json
import sqlite3
import unittest

from session_backup.backup import BackupSnapshot, SessionBackupService, compute_integrity
from session_backup.errors import MalformedSnapshotError, SessionNotFoundError, SnapshotIntegrityError
from session_backup.storage import ChatRecord, ChatStore, GroupChatStore, MessageRecord, MessageStore, SwipeRecord, SwipeStore
from tests.storage.base import FIXED_TIMESTAMP, DatabaseTestCase


class _FailingSwipeStore:
    def __init__(self, inner: SwipeStore):
        self._inner = inner

    def find_by_message_ids(self, message_ids: list[int]) -> list[SwipeRecord]:
        return self._inner.find_by_message_ids(message_ids)

    def save(self, swipes: list[SwipeRecord]) -> list[SwipeRecord]:
        raise sqlite3.OperationalError("disk I/O error")


def _message(message_id: int, mes: str, send_date: int) -> MessageRecord:
    return MessageRecord(id=message_id, chat_id=5, mes_id=0, name="艾莉丝", is_user=False, mes=mes, send_date=send_date)


def _swipe(swipe_id: int, message_id: int, swipe_index: int, content: str) -> SwipeRecord:
    return SwipeRecord(id=swipe_id, message_id=message_id, swipe_index=swipe_index, content=content, send_date=1)


class SessionBackupServiceTests(DatabaseTestCase):
    def _seed_chat(self, user_id: int = 1, chat_name: str = "魔法学习") -> int:
        chat_id = self._conversations.create_chat(user_id, chat_name=chat_name, character_name="艾莉丝")
        self._conversations.append_message(user_id, "chat", chat_id, name="我", is_user=True, mes="教我火球术", send_date=1000)
        reply = self._conversations.append_message(
            user_id, "chat", chat_id, name="艾莉丝", is_user=False, mes="先集中精神", send_date=2000
        )
        self._swipe_manager.create_swipe(reply.id, "先念咒语", send_date=2100)
        self._conversations.append_message(user_id, "chat", chat_id, name="我", is_user=True, mes="然后呢", send_date=3000)
        return chat_id

    def _transcript(self, snapshot: BackupSnapshot) -> tuple[list[str], list[tuple[int, int, str]]]:
        messages = snapshot.data["messages"]
        position = {m["id"]: i for i, m in enumerate(messages)}
        swipes = [(position[s["messageId"]], s["swipeIndex"], s["content"]) for s in snapshot.data["swipes"]]
        return [m["mes"] for m in messages], swipes

    def test_backup_chat_captures_header_messages_and_swipes(self) -> None:
        chat_id = self._seed_chat()

        snapshot = self._backups.backup_chat(1, chat_id)

        self.assertEqual("1.0.0", snapshot.version)
        self.assertEqual("chat", snapshot.type)
        self.assertEqual(FIXED_TIMESTAMP, snapshot.timestamp)
        self.assertEqual(64, len(snapshot.integrity))
        self.assertEqual("魔法学习", snapshot.data["chat"]["chatName"])
        self.assertNotIn("group", snapshot.data)
        messages, swipes = self._transcript(snapshot)
        self.assertEqual(["教我火球术", "先集中精神", "然后呢"], messages)
        self.assertEqual(
            [(0, 0, "教我火球术"), (1, 0, "先集中精神"), (1, 1, "先念咒语"), (2, 0, "然后呢")],
            swipes,
        )

    def test_digest_is_reproducible_from_declared_fields(self) -> None:
        snapshot = self._backups.backup_chat(1, self._seed_chat())
        recomputed = compute_integrity(snapshot.version, snapshot.type, snapshot.timestamp, snapshot.data)
        self.assertEqual(snapshot.integrity, recomputed)
        self.assertEqual(snapshot.integrity, self._backups.backup_chat(1, snapshot.data["chat"]["id"]).integrity)

    def test_backup_is_read_only(self) -> None:
        chat_id = self._seed_chat()
        counts = {t: self._count(t) for t in ("chats", "messages", "swipes", "events")}

        self._backups.backup_chat(1, chat_id)

        self.assertEqual(counts, {t: self._count(t) for t in counts})

    def test_backup_of_foreign_chat_raises_not_found_and_touches_nothing(self) -> None:
        chat_id = self._seed_chat(user_id=2)
        events_before = self._count("events")

        with self.assertRaises(SessionNotFoundError):
            self._backups.backup_chat(1, chat_id)

        self.assertEqual(events_before, self._count("events"))

    def test_backup_of_missing_group_raises_not_found(self) -> None:
        with self.assertRaises(SessionNotFoundError) as ctx:
            self._backups.backup_group_chat(1, 404)
        self.assertIn("群聊不存在", str(ctx.exception))

    def test_round_trip_preserves_messages_and_swipe_order(self) -> None:
        chat_id = self._seed_chat()
        original = self._backups.backup_chat(1, chat_id)

        new_id = self._backups.restore_from_backup(1, original)
        restored = self._backups.backup_chat(1, new_id)

        self.assertNotEqual(chat_id, new_id)
        self.assertEqual(self._transcript(original), self._transcript(restored))
        original_ids = {m["id"] for m in original.data["messages"]}
        restored_ids = {m["id"] for m in restored.data["messages"]}
        self.assertFalse(original_ids & restored_ids)

    def test_restore_suffixes_name_and_leaves_original_untouched(self) -> None:
        chat_id = self._seed_chat()
        new_id = self._backups.restore_from_backup(1, self._backups.backup_chat(1, chat_id))

        chats = ChatStore(self._db)
        self.assertEqual("魔法学习 (恢复)", chats.find_owned(1, new_id).chat_name)
        self.assertEqual("魔法学习", chats.find_owned(1, chat_id).chat_name)
        self.assertEqual(3, chats.find_owned(1, new_id).message_count)

    def test_restore_of_unnamed_chat_uses_character_name(self) -> None:
        chat_id = self._conversations.create_chat(1, character_name="艾莉丝")
        new_id = self._backups.restore_from_backup(1, self._backups.backup_chat(1, chat_id))
        self.assertEqual("与艾莉丝的对话 (恢复)", ChatStore(self._db).find_owned(1, new_id).chat_name)

    def test_restore_assigns_new_owner(self) -> None:
        snapshot = self._backups.backup_chat(1, self._seed_chat(user_id=1))
        new_id = self._backups.restore_from_backup(7, snapshot)
        self.assertIsNotNone(ChatStore(self._db).find_owned(7, new_id))
        self.assertIsNone(ChatStore(self._db).find_owned(1, new_id))

    def test_restore_emits_event(self) -> None:
        new_id = self._backups.restore_from_backup(1, self._backups.backup_chat(1, self._seed_chat()))
        events = self._events.list_events(1, event_type="session.restored")
        self.assertEqual(1, len(events))
        self.assertEqual(new_id, events[0]["payload"]["session_id"])
        self.assertEqual(4, events[0]["payload"]["swipe_count"])

    def test_swipes_are_remapped_to_new_message_ids(self) -> None:
        snapshot = BackupSnapshot.create(
            "chat",
            ChatRecord(id=5, user_id=1, chat_name="魔法学习"),
            [_message(10, "m1", 1000), _message(11, "m2", 2000)],
            [_swipe(100, 10, 0, "m1"), _swipe(101, 11, 0, "m2")],
            timestamp=FIXED_TIMESTAMP,
        )

        new_id = self._backups.restore_from_backup(1, snapshot)

        new_messages = MessageStore(self._db).find_by_session("chat", new_id)
        new_swipes = SwipeStore(self._db).find_by_message_ids([m.id for m in new_messages])
        self.assertEqual(["m1", "m2"], [m.mes for m in new_messages])
        self.assertEqual([new_messages[0].id, new_messages[1].id], [s.message_id for s in new_swipes])
        self.assertEqual(["m1", "m2"], [s.content for s in new_swipes])

    def test_orphan_swipes_are_dropped(self) -> None:
        snapshot = BackupSnapshot.create(
            "chat",
            ChatRecord(id=5, user_id=1, chat_name="魔法学习"),
            [_message(10, "m1", 1000)],
            [_swipe(100, 10, 0, "m1"), _swipe(101, 99, 0, "orphan")],
            timestamp=FIXED_TIMESTAMP,
        )

        new_id = self._backups.restore_from_backup(1, snapshot)

        new_messages = MessageStore(self._db).find_by_session("chat", new_id)
        new_swipes = SwipeStore(self._db).find_by_message_ids([m.id for m in new_messages])
        self.assertEqual(["m1"], [s.content for s in new_swipes])
        self.assertEqual(1, self._count("swipes"))

    def test_tampered_snapshot_is_rejected(self) -> None:
        snapshot = self._backups.backup_chat(1, self._seed_chat())
        raw = snapshot.to_dict()
        raw["data"]["messages"][0]["mes"] = "篡改"
        tampered = BackupSnapshot.from_dict(raw)
        chats_before = self._count("chats")

        self.assertFalse(self._backups.verify_integrity(tampered))
        with self.assertRaises(SnapshotIntegrityError) as ctx:
            self._backups.restore_from_backup(1, tampered)

        self.assertEqual("备份数据完整性校验失败", str(ctx.exception))
        self.assertEqual(chats_before, self._count("chats"))

    def test_tampering_with_header_fields_is_detected(self) -> None:
        snapshot = self._backups.backup_chat(1, self._seed_chat())
        for key, value in (("version", "9.9.9"), ("type", "group"), ("timestamp", 1)):
            raw = snapshot.to_dict()
            raw[key] = value
            self.assertFalse(self._backups.verify_integrity(BackupSnapshot.from_dict(raw)), key)

    def test_verify_is_idempotent(self) -> None:
        snapshot = self._backups.backup_chat(1, self._seed_chat())
        before = snapshot.to_dict()

        first = self._backups.verify_integrity(snapshot)
        second = self._backups.verify_integrity(snapshot)

        self.assertTrue(first)
        self.assertEqual(first, second)
        self.assertEqual(before, snapshot.to_dict())

    def test_restore_without_header_raises_malformed(self) -> None:
        data = {"messages": [], "swipes": []}
        snapshot = BackupSnapshot(
            version="1.0.0",
            type="chat",
            timestamp=FIXED_TIMESTAMP,
            integrity=compute_integrity("1.0.0", "chat", FIXED_TIMESTAMP, data),
            data=data,
        )

        with self.assertRaises(MalformedSnapshotError) as ctx:
            self._backups.restore_from_backup(1, snapshot)

        self.assertIn("备份数据缺少聊天信息", str(ctx.exception))
        self.assertEqual(0, self._count("chats"))

    def test_restore_with_unknown_type_raises_malformed(self) -> None:
        data = {"messages": [], "swipes": []}
        snapshot = BackupSnapshot(
            version="1.0.0",
            type="channel",
            timestamp=FIXED_TIMESTAMP,
            integrity=compute_integrity("1.0.0", "channel", FIXED_TIMESTAMP, data),
            data=data,
        )
        with self.assertRaises(MalformedSnapshotError):
            self._backups.restore_from_backup(1, snapshot)

    def test_failed_swipe_insert_rolls_back_whole_restore(self) -> None:
        snapshot = self._backups.backup_chat(1, self._seed_chat())
        counts = {t: self._count(t) for t in ("chats", "messages", "swipes", "events")}
        service = SessionBackupService(
            chats=ChatStore(self._db),
            groups=GroupChatStore(self._db),
            messages=MessageStore(self._db),
            swipes=_FailingSwipeStore(SwipeStore(self._db)),
            transactions=self._db,
            events=self._events,
        )

        with self.assertRaises(sqlite3.OperationalError):
            service.restore_from_backup(1, snapshot)

        self.assertEqual(counts, {t: self._count(t) for t in counts})

    def test_group_chat_round_trip_copies_members(self) -> None:
        group_id = self._conversations.create_group_chat(
            1,
            "冒险小队",
            [{"character_name": "战士"}, {"character_name": "法师", "character_card_id": 3}],
            description="一起去打龙",
        )
        message = self._conversations.append_message(
            1, "group", group_id, name="战士", is_user=False, mes="出发!", send_date=500
        )
        self._swipe_manager.create_swipe(message.id, "走吧!", send_date=600)

        snapshot = self._backups.backup_group_chat(1, group_id)
        self.assertEqual("group", snapshot.type)
        self.assertEqual(["战士", "法师"], [m["characterName"] for m in snapshot.data["group"]["members"]])

        new_id = self._backups.restore_from_backup(1, snapshot)

        group = GroupChatStore(self._db).find_owned(1, new_id)
        self.assertEqual("冒险小队 (恢复)", group.group_name)
        self.assertEqual("一起去打龙", group.description)
        self.assertEqual(["战士", "法师"], [m.character_name for m in group.members])
        restored = self._backups.backup_group_chat(1, new_id)
        self.assertEqual(["出发!"], [m["mes"] for m in restored.data["messages"]])
        self.assertEqual(["出发!", "走吧!"], [s["content"] for s in restored.data["swipes"]])
        self.assertTrue(all(m["groupChatId"] == new_id and m["chatId"] is None for m in restored.data["messages"]))

    def test_non_ascii_integrity_fails_verification(self) -> None:
        raw = self._backups.backup_chat(1, self._seed_chat()).to_dict()
        raw["integrity"] = "篡改" * 32
        snapshot = BackupSnapshot.from_dict(raw)

        self.assertFalse(self._backups.verify_integrity(snapshot))
        chats_before = self._count("chats")
        with self.assertRaises(SnapshotIntegrityError):
            self._backups.restore_from_backup(1, snapshot)
        self.assertEqual(chats_before, self._count("chats"))

    def test_group_members_that_are_not_a_list_raise_malformed(self) -> None:
        data = {
            "group": {"id": 3, "userId": 1, "groupName": "小队", "members": 5},
            "messages": [],
            "swipes": [],
        }
        snapshot = BackupSnapshot(
            version="1.0.0",
            type="group",
            timestamp=FIXED_TIMESTAMP,
            integrity=compute_integrity("1.0.0", "group", FIXED_TIMESTAMP, data),
            data=data,
        )

        with self.assertRaises(MalformedSnapshotError):
            self._backups.restore_from_backup(1, snapshot)
        self.assertEqual(0, self._count("group_chats"))

    def test_messages_that_are_not_a_list_raise_malformed(self) -> None:
        data = {"chat": {"id": 5, "userId": 1, "chatName": "x"}, "messages": 7, "swipes": []}
        snapshot = BackupSnapshot(
            version="1.0.0",
            type="chat",
            timestamp=FIXED_TIMESTAMP,
            integrity=compute_integrity("1.0.0", "chat", FIXED_TIMESTAMP, data),
            data=data,
        )
        with self.assertRaises(MalformedSnapshotError):
            self._backups.restore_from_backup(1, snapshot)
        self.assertEqual(0, self._count("chats"))

    def test_restore_of_chat_without_any_name_uses_neutral_title(self) -> None:
        chat_id = self._conversations.create_chat(1)
        new_id = self._backups.restore_from_backup(1, self._backups.backup_chat(1, chat_id))
        self.assertEqual("未命名对话 (恢复)", ChatStore(self._db).find_owned(1, new_id).chat_name)

    def test_restore_survives_json_transport(self) -> None:
        snapshot = self._backups.backup_chat(1, self._seed_chat())
        transported = BackupSnapshot.from_dict(json.loads(json.dumps(snapshot.to_dict(), ensure_ascii=False)))

        self.assertTrue(self._backups.verify_integrity(transported))
        self.assertIsInstance(self._backups.restore_from_backup(1, transported), int)


if __name__ == "__main__":
    unittest.main()
