from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Protocol, runtime_checkable

from session_backup.storage.models import MessageRecord, SwipeRecord


@runtime_checkable
class SessionStore(Protocol):
    kind: str

    def find_owned(self, owner_id: int, session_id: int) -> Any | None: ...

    def create(self, fields: dict) -> Any:
        """Build an unsaved session record (id is None)."""
        ...

    def save(self, session: Any) -> Any: ...


@runtime_checkable
class MessageStore(Protocol):
    def find_by_session(self, kind: str, session_id: int) -> list[MessageRecord]: ...

    def save(self, messages: list[MessageRecord]) -> list[MessageRecord]:
        """Persist rows; the result must be index-aligned with the input."""
        ...


@runtime_checkable
class SwipeStore(Protocol):
    def find_by_message_ids(self, message_ids: list[int]) -> list[SwipeRecord]: ...

    def save(self, swipes: list[SwipeRecord]) -> list[SwipeRecord]: ...


@runtime_checkable
class TransactionScope(Protocol):
    def transaction(self) -> AbstractContextManager[None]: ...
