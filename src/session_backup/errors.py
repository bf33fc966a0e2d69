from __future__ import annotations


class SessionBackupError(Exception):
    """Base class for errors surfaced to callers of the backup services."""


class SessionNotFoundError(SessionBackupError):
    def __init__(self, kind: str, session_id: int):
        self.kind = kind
        self.session_id = session_id
        message = "群聊不存在" if kind == "group" else "聊天不存在"
        super().__init__(f"{message}: {session_id}")


class SnapshotIntegrityError(SessionBackupError):
    def __init__(self, message: str = "备份数据完整性校验失败"):
        super().__init__(message)


class MalformedSnapshotError(SessionBackupError):
    pass


class SwipeError(SessionBackupError):
    pass
