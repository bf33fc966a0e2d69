from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from session_backup.app_config import AppConfig, resolve_path
from session_backup.backup import SessionBackupService
from session_backup.logging_config import setup_logging
from session_backup.services.chat_exporter import ChatExporter
from session_backup.services.conversation_manager import ConversationManager
from session_backup.services.swipe_manager import SwipeManager
from session_backup.storage import ChatStore, Database, EventEmitter, GroupChatStore, MessageStore, SwipeStore
from session_backup.storage.events import epoch_millis


@dataclass
class AppRuntime:
    db: Database
    events: EventEmitter
    conversations: ConversationManager
    swipes: SwipeManager
    backups: SessionBackupService
    exporter: ChatExporter
    log_descriptions: list[str]


def build_backup_service(
    db: Database,
    events: EventEmitter | None = None,
    *,
    clock: Callable[[], int] = epoch_millis,
) -> SessionBackupService:
    return SessionBackupService(
        chats=ChatStore(db),
        groups=GroupChatStore(db),
        messages=MessageStore(db),
        swipes=SwipeStore(db),
        transactions=db,
        events=events,
        clock=clock,
    )


def bootstrap_runtime(app: AppConfig, *, configure_logging: bool = True) -> AppRuntime:
    log_descriptions = (
        setup_logging(level=app.log_level, consumers=app.log_consumers) if configure_logging else []
    )

    db_path = app.database_path
    if db_path != ":memory:":
        db_path = str(resolve_path(db_path))
    db = Database(db_path)
    events = EventEmitter(db)

    return AppRuntime(
        db=db,
        events=events,
        conversations=ConversationManager(db, events),
        swipes=SwipeManager(db),
        backups=build_backup_service(db, events),
        exporter=ChatExporter(db),
        log_descriptions=log_descriptions,
    )
