from __future__ import annotations

import hmac
from collections.abc import Callable
from dataclasses import fields, replace

from loguru import logger

from session_backup.backup.protocols import MessageStore, SessionStore, SwipeStore, TransactionScope
from session_backup.backup.snapshot import BackupSnapshot, compute_integrity
from session_backup.errors import SessionNotFoundError, SnapshotIntegrityError
from session_backup.storage.events import EventEmitter, epoch_millis
from session_backup.storage.models import ChatRecord, GroupChatRecord, MessageRecord, SwipeRecord

RESTORED_SUFFIX = " (恢复)"

_NOT_COPIED_ON_RESTORE = frozenset({"id", "user_id", "created_at", "updated_at"})

_NAME_FIELDS = {
    "chat": "chat_name",
    "group": "group_name",
}


class SessionBackupService:
    """Exports a chat or group chat as an integrity-checked snapshot and
    restores such snapshots into brand new sessions.

    Backups only read. A restore writes the new header, its messages and their
    swipes inside a single transaction, so a failure leaves no partial session.
    """

    def __init__(
        self,
        *,
        chats: SessionStore,
        groups: SessionStore,
        messages: MessageStore,
        swipes: SwipeStore,
        transactions: TransactionScope,
        events: EventEmitter | None = None,
        clock: Callable[[], int] = epoch_millis,
    ):
        self._session_stores = {store.kind: store for store in (chats, groups)}
        self._messages = messages
        self._swipes = swipes
        self._transactions = transactions
        self._events = events
        self._clock = clock

    def backup_chat(self, owner_id: int, chat_id: int) -> BackupSnapshot:
        return self._backup("chat", owner_id, chat_id)

    def backup_group_chat(self, owner_id: int, group_id: int) -> BackupSnapshot:
        return self._backup("group", owner_id, group_id)

    def verify_integrity(self, snapshot: BackupSnapshot) -> bool:
        try:
            expected = compute_integrity(snapshot.version, snapshot.type, snapshot.timestamp, snapshot.data)
        except (TypeError, ValueError):
            return False
        # compare_digest rejects non-ASCII str, so compare encoded bytes.
        return hmac.compare_digest(expected.encode("ascii"), str(snapshot.integrity).encode("utf-8"))

    def restore_from_backup(self, owner_id: int, snapshot: BackupSnapshot) -> int:
        if not self.verify_integrity(snapshot):
            raise SnapshotIntegrityError()

        kind = snapshot.type
        header = snapshot.header()
        messages = snapshot.messages()
        swipes = snapshot.swipes()
        store = self._session_stores[kind]

        with self._transactions.transaction():
            session = store.save(store.create(self._restored_header_fields(kind, owner_id, header)))
            saved_messages = self._messages.save(
                [self._attach_message(kind, session.id, message) for message in messages]
            )
            id_map = self._map_message_ids(messages, saved_messages)

            restored_swipes: list[SwipeRecord] = []
            for swipe in swipes:
                new_message_id = id_map.get(swipe.message_id)
                if new_message_id is None:
                    logger.debug(
                        f"Dropping swipe {swipe.id} of unknown message {swipe.message_id} while restoring {kind}"
                    )
                    continue
                restored_swipes.append(replace(swipe, id=None, message_id=new_message_id))
            if restored_swipes:
                self._swipes.save(restored_swipes)

            if self._events is not None:
                self._events.emit(
                    owner_id,
                    "session.restored",
                    {
                        "type": kind,
                        "session_id": session.id,
                        "source_session_id": header.id,
                        "backup_timestamp": snapshot.timestamp,
                        "message_count": len(saved_messages),
                        "swipe_count": len(restored_swipes),
                    },
                )

        logger.info(
            f"Restored {kind} {header.id} as {session.id} for user {owner_id} "
            f"({len(saved_messages)} messages, {len(restored_swipes)} swipes)"
        )
        return session.id

    def _backup(self, kind: str, owner_id: int, session_id: int) -> BackupSnapshot:
        header = self._session_stores[kind].find_owned(owner_id, session_id)
        if header is None:
            raise SessionNotFoundError(kind, session_id)

        messages = self._messages.find_by_session(kind, session_id)
        swipes = self._swipes.find_by_message_ids([m.id for m in messages]) if messages else []

        snapshot = BackupSnapshot.create(kind, header, messages, swipes, timestamp=self._clock())
        logger.info(
            f"Backed up {kind} {session_id} for user {owner_id} "
            f"({len(messages)} messages, {len(swipes)} swipes)"
        )
        return snapshot

    def _restored_header_fields(self, kind: str, owner_id: int, header: ChatRecord | GroupChatRecord) -> dict:
        copied = {f.name: getattr(header, f.name) for f in fields(header) if f.name not in _NOT_COPIED_ON_RESTORE}
        copied["user_id"] = owner_id
        copied[_NAME_FIELDS[kind]] = f"{header.display_name}{RESTORED_SUFFIX}"
        return copied

    def _attach_message(self, kind: str, session_id: int, message: MessageRecord) -> MessageRecord:
        if kind == "chat":
            return replace(message, id=None, chat_id=session_id, group_chat_id=None)
        return replace(message, id=None, chat_id=None, group_chat_id=session_id)

    def _map_message_ids(self, originals: list[MessageRecord], saved: list[MessageRecord]) -> dict[int, int]:
        if len(originals) != len(saved):
            raise RuntimeError(
                f"Message store returned {len(saved)} rows for {len(originals)} restored messages"
            )
        return {
            original.id: new.id
            for original, new in zip(originals, saved, strict=True)
            if original.id is not None
        }
