from __future__ import annotations

from dataclasses import replace

from loguru import logger

from session_backup.errors import SwipeError
from session_backup.services.conversation_manager import estimate_tokens
from session_backup.storage.database import Database
from session_backup.storage.events import epoch_millis
from session_backup.storage.messages import MessageStore, SwipeStore
from session_backup.storage.models import MessageRecord, SwipeRecord


class SwipeManager:
    """Alternate generations ("swipes") of a single message.

    Swipe indexes of a message are always contiguous from 0 and the message row
    mirrors the content of the swipe selected by ``swipe_id``.
    """

    def __init__(self, db: Database):
        self._db = db
        self._messages = MessageStore(db)
        self._swipes = SwipeStore(db)

    def get_swipes(self, message_id: int) -> list[SwipeRecord]:
        return self._swipes.find_by_message(message_id)

    def create_swipe(
        self,
        message_id: int,
        content: str,
        *,
        send_date: int | None = None,
        gen_started: int | None = None,
        gen_finished: int | None = None,
        gen_id: str | None = None,
        extra: dict | None = None,
    ) -> SwipeRecord:
        self._require_message(message_id)
        swipe_extra = dict(extra or {})
        swipe_extra.setdefault("token_count", estimate_tokens(content))
        with self._db.transaction():
            (swipe,) = self._swipes.save(
                [
                    SwipeRecord(
                        id=None,
                        message_id=message_id,
                        swipe_index=len(self._swipes.find_by_message(message_id)),
                        content=content,
                        send_date=send_date if send_date is not None else epoch_millis(),
                        gen_started=gen_started,
                        gen_finished=gen_finished,
                        gen_id=gen_id,
                        extra=swipe_extra,
                    )
                ]
            )
        return swipe

    def switch_swipe(self, message_id: int, swipe_index: int) -> MessageRecord:
        message = self._require_message(message_id)
        swipe = self._find_swipe(message_id, swipe_index)
        with self._db.transaction():
            (updated,) = self._messages.save([self._apply_swipe(message, swipe)])
        return updated

    def delete_swipe(self, message_id: int, swipe_index: int) -> None:
        message = self._require_message(message_id)
        swipes = self._swipes.find_by_message(message_id)
        if len(swipes) <= 1:
            raise SwipeError("不能删除最后一个Swipe版本")
        target = self._find_swipe(message_id, swipe_index, swipes)

        with self._db.transaction():
            self._swipes.delete(target.id)
            remaining = [s for s in swipes if s.id != target.id]
            renumbered = [replace(s, swipe_index=i) for i, s in enumerate(remaining) if s.swipe_index != i]
            if renumbered:
                self._swipes.save(renumbered)
            remaining = [replace(s, swipe_index=i) for i, s in enumerate(remaining)]

            if message.swipe_id == swipe_index:
                self._messages.save([self._apply_swipe(message, remaining[0])])
            elif message.swipe_id > swipe_index:
                self._messages.save([replace(message, swipe_id=message.swipe_id - 1)])

        logger.debug(f"Deleted swipe {swipe_index} of message {message_id}; {len(remaining)} left")

    def _apply_swipe(self, message: MessageRecord, swipe: SwipeRecord) -> MessageRecord:
        return replace(
            message,
            mes=swipe.content,
            swipe_id=swipe.swipe_index,
            send_date=swipe.send_date,
            gen_started=swipe.gen_started,
            gen_finished=swipe.gen_finished,
            gen_id=swipe.gen_id,
            extra={**(message.extra or {}), **(swipe.extra or {})},
        )

    def _require_message(self, message_id: int) -> MessageRecord:
        message = self._messages.find_by_id(message_id)
        if message is None:
            raise SwipeError(f"消息不存在: {message_id}")
        return message

    def _find_swipe(
        self,
        message_id: int,
        swipe_index: int,
        swipes: list[SwipeRecord] | None = None,
    ) -> SwipeRecord:
        candidates = swipes if swipes is not None else self._swipes.find_by_message(message_id)
        for swipe in candidates:
            if swipe.swipe_index == swipe_index:
                return swipe
        raise SwipeError(f"Swipe版本 {swipe_index} 不存在")
