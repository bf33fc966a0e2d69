from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class AppConfig:
    database_path: str
    backup_directory: str
    recent_session_limit: int
    log_level: str
    log_consumers: list | None


def load_json_config(config_path: Path | None = None) -> dict:
    path = config_path or Path.cwd() / "config.json"
    if path.exists():
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def parse_app_config(config: dict) -> AppConfig:
    database_path = os.environ.get("SESSION_BACKUP_DB", "").strip() or str(
        config.get("DatabasePath", ".session_backup/sessions.db")
    )
    return AppConfig(
        database_path=database_path,
        backup_directory=str(config.get("BackupDirectory", "backups")),
        recent_session_limit=int(config.get("RecentSessionLimit", 10)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_path(value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = Path.cwd() / path
    return path
