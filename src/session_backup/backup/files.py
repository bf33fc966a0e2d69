from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from session_backup.backup.snapshot import BackupSnapshot
from session_backup.errors import MalformedSnapshotError


def default_backup_filename(snapshot: BackupSnapshot) -> str:
    header = snapshot.data.get(snapshot.type) or {}
    stamp = datetime.fromtimestamp(snapshot.timestamp / 1000, UTC).strftime("%Y%m%d-%H%M%S")
    return f"{snapshot.type}-{header.get('id', 'unknown')}-{stamp}.json"


def write_snapshot(snapshot: BackupSnapshot, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def read_snapshot(path: Path) -> BackupSnapshot:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as ex:
        raise MalformedSnapshotError(f"Backup file is not valid JSON: {path} ({ex})") from ex
    return BackupSnapshot.from_dict(raw)
