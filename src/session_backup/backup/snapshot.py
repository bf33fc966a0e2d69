from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import MISSING, dataclass, fields, is_dataclass
from typing import Any, TypeVar

from session_backup.errors import MalformedSnapshotError
from session_backup.storage.models import (
    ChatRecord,
    GroupChatRecord,
    GroupMemberRecord,
    MessageRecord,
    SwipeRecord,
)

BACKUP_VERSION = "1.0.0"

SESSION_KINDS = ("chat", "group")

_HEADER_TYPES: dict[str, type] = {
    "chat": ChatRecord,
    "group": GroupChatRecord,
}

_NESTED_TYPES: dict[str, type] = {
    "members": GroupMemberRecord,
}

R = TypeVar("R")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def record_to_wire(record: Any) -> dict:
    """Dataclass record -> JSON-ready dict with camelCase field names.

    Free-form blobs (metadata, extra) are copied as-is; their keys are not renamed.
    """
    wire: dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, tuple):
            value = [record_to_wire(item) if is_dataclass(item) else item for item in value]
        else:
            value = copy.deepcopy(value)
        wire[_camel(f.name)] = value
    return wire


def record_from_wire(record_type: type[R], payload: Any) -> R:
    if not isinstance(payload, dict):
        raise MalformedSnapshotError(f"{record_type.__name__} entry must be an object")

    kwargs: dict[str, Any] = {}
    for f in fields(record_type):
        key = _camel(f.name)
        if key in payload:
            value = payload[key]
            nested = _NESTED_TYPES.get(f.name)
            if nested is not None:
                if value is None:
                    value = []
                if not isinstance(value, list):
                    raise MalformedSnapshotError(f"{record_type.__name__} entry field {key!r} must be a list")
                value = tuple(record_from_wire(nested, item) for item in value)
            kwargs[f.name] = value
        elif f.default is MISSING and f.default_factory is MISSING:
            raise MalformedSnapshotError(f"{record_type.__name__} entry is missing {key!r}")
    return record_type(**kwargs)


def canonical_json(value: Any) -> bytes:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def compute_integrity(version: str, kind: str, timestamp: int, data: dict) -> str:
    payload = {"version": version, "type": kind, "timestamp": timestamp, "data": data}
    return hashlib.sha256(canonical_json(payload)).hexdigest()


@dataclass(frozen=True)
class BackupSnapshot:
    """Versioned export of one chat or group chat.

    ``data`` holds the wire form (``chat``/``group`` header, ``messages``,
    ``swipes``) exactly as it was hashed into ``integrity``.
    """

    version: str
    type: str
    timestamp: int
    integrity: str
    data: dict

    @classmethod
    def create(
        cls,
        kind: str,
        header: ChatRecord | GroupChatRecord,
        messages: list[MessageRecord],
        swipes: list[SwipeRecord],
        *,
        timestamp: int,
        version: str = BACKUP_VERSION,
    ) -> BackupSnapshot:
        if kind not in SESSION_KINDS:
            raise ValueError(f"Unknown session kind: {kind!r}")
        data = {
            kind: record_to_wire(header),
            "messages": [record_to_wire(m) for m in messages],
            "swipes": [record_to_wire(s) for s in swipes],
        }
        integrity = compute_integrity(version, kind, timestamp, data)
        return cls(version=version, type=kind, timestamp=timestamp, integrity=integrity, data=data)

    @classmethod
    def from_dict(cls, raw: Any) -> BackupSnapshot:
        if not isinstance(raw, dict):
            raise MalformedSnapshotError("Backup must be a JSON object")

        missing = [key for key in ("version", "type", "timestamp", "integrity", "data") if key not in raw]
        if missing:
            raise MalformedSnapshotError(f"Backup is missing fields: {', '.join(missing)}")

        data = raw["data"]
        if not isinstance(data, dict):
            raise MalformedSnapshotError("Backup 'data' must be an object")
        for key in ("messages", "swipes"):
            if not isinstance(data.get(key, []), list):
                raise MalformedSnapshotError(f"Backup 'data.{key}' must be a list")

        timestamp = raw["timestamp"]
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise MalformedSnapshotError("Backup 'timestamp' must be an integer")

        return cls(
            version=str(raw["version"]),
            type=str(raw["type"]),
            timestamp=timestamp,
            integrity=str(raw["integrity"]),
            data=data,
        )

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "type": self.type,
            "timestamp": self.timestamp,
            "integrity": self.integrity,
            "data": copy.deepcopy(self.data),
        }

    def header(self) -> ChatRecord | GroupChatRecord:
        header_type = _HEADER_TYPES.get(self.type)
        if header_type is None:
            raise MalformedSnapshotError(f"Unknown backup type: {self.type!r}")
        raw_header = self.data.get(self.type)
        if not raw_header:
            label = "聊天信息" if self.type == "chat" else "群聊信息"
            raise MalformedSnapshotError(f"备份数据缺少{label}")
        return record_from_wire(header_type, raw_header)

    def messages(self) -> list[MessageRecord]:
        return [record_from_wire(MessageRecord, m) for m in self._entries("messages")]

    def swipes(self) -> list[SwipeRecord]:
        return [record_from_wire(SwipeRecord, s) for s in self._entries("swipes")]

    def _entries(self, key: str) -> list:
        entries = self.data.get(key) or []
        if not isinstance(entries, list):
            raise MalformedSnapshotError(f"Backup 'data.{key}' must be a list")
        return entries
