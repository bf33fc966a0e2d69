from session_backup.backup.files import default_backup_filename, read_snapshot, write_snapshot
from session_backup.backup.service import RESTORED_SUFFIX, SessionBackupService
from session_backup.backup.snapshot import BACKUP_VERSION, BackupSnapshot, canonical_json, compute_integrity

__all__ = [
    "BACKUP_VERSION",
    "BackupSnapshot",
    "RESTORED_SUFFIX",
    "SessionBackupService",
    "canonical_json",
    "compute_integrity",
    "default_backup_filename",
    "read_snapshot",
    "write_snapshot",
]
