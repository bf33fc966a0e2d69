import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_BACKUP_LOGGER_PREFIX = "session_backup.backup"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


def is_backup_record(record: dict) -> bool:
    """True for records emitted by the backup/restore code paths."""
    name = record.get("name") or ""
    return name == _BACKUP_LOGGER_PREFIX or name.startswith(_BACKUP_LOGGER_PREFIX + ".")


class ConsoleLogConsumer:
    def __init__(self, colorize: bool | None = None):
        self._colorize = colorize

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            colorize=self._colorize,
            format="<level>{level:<8}</level> | <cyan>{name}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(self, path: str = "session_backup.log", rotation: str = "10 MB", retention: int = 5):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            encoding="utf-8",
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


class AuditLogConsumer:
    """JSON-lines trail of every backup and restore, kept apart from the main log."""

    def __init__(self, path: str = "backup_audit.jsonl"):
        self._path = path

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            filter=is_backup_record,
            serialize=True,
            encoding="utf-8",
        )

    def describe(self, level: str) -> str:
        return f"audit ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "audit": AuditLogConsumer,
}


def _build_consumer(config: dict[str, Any]) -> LogConsumer | None:
    sink_type = config.get("type", "")
    cls = _CONSUMER_TYPES.get(sink_type)
    if cls is None:
        logger.warning(f"Unknown log consumer type: {sink_type!r}")
        return None
    return cls(**{k: v for k, v in config.items() if k not in ("type", "level")})


def setup_logging(level: str = "INFO", consumers: list[dict[str, Any]] | None = None) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    ``consumers`` defaults to a single console sink; an empty list silences
    logging entirely. Returns one description per registered consumer.
    """
    logger.remove()

    descriptions: list[str] = []
    for config in consumers if consumers is not None else [{"type": "console"}]:
        consumer = _build_consumer(config)
        if consumer is None:
            continue
        sink_level = config.get("level", level)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))
    return descriptions
