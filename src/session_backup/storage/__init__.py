from session_backup.storage.chats import ChatStore, GroupChatStore
from session_backup.storage.database import Database
from session_backup.storage.events import EventEmitter
from session_backup.storage.messages import MessageStore, SwipeStore
from session_backup.storage.models import (
    ChatRecord,
    GroupChatRecord,
    GroupMemberRecord,
    MessageRecord,
    SwipeRecord,
)

__all__ = [
    "ChatRecord",
    "ChatStore",
    "Database",
    "EventEmitter",
    "GroupChatRecord",
    "GroupChatStore",
    "GroupMemberRecord",
    "MessageRecord",
    "MessageStore",
    "SwipeRecord",
    "SwipeStore",
]
