import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from session_backup.app_config import load_json_config, parse_app_config, resolve_path
from session_backup.backup import default_backup_filename, read_snapshot, write_snapshot
from session_backup.bootstrap import AppRuntime, bootstrap_runtime
from session_backup.errors import SessionBackupError
from session_backup.services.chat_exporter import EXPORT_FORMATS
from session_backup.services.session_formatter import SessionFormatter


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="session-backup",
        description="Back up, verify, restore and export chat and group-chat sessions.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    sub = parser.add_subparsers(dest="command", required=True)

    backup = sub.add_parser("backup", help="Export a session to an integrity-checked JSON file")
    backup.add_argument("--user", type=int, required=True)
    target = backup.add_mutually_exclusive_group(required=True)
    target.add_argument("--chat", type=int, help="Chat id")
    target.add_argument("--group", type=int, help="Group chat id")
    backup.add_argument("-o", "--output", type=Path, default=None, help="Output file")

    verify = sub.add_parser("verify", help="Check the integrity digest of a backup file")
    verify.add_argument("file", type=Path)

    restore = sub.add_parser("restore", help="Restore a backup file as a new session")
    restore.add_argument("--user", type=int, required=True)
    restore.add_argument("file", type=Path)

    sessions = sub.add_parser("sessions", help="List recent sessions or search them")
    sessions.add_argument("--user", type=int, required=True)
    sessions.add_argument("--query", default=None)
    sessions.add_argument("--limit", type=int, default=None)

    export = sub.add_parser("export", help="Export a chat as JSONL, text, Markdown or HTML")
    export.add_argument("--user", type=int, required=True)
    export.add_argument("--chat", type=int, required=True, help="Chat id")
    export.add_argument("--format", choices=sorted(EXPORT_FORMATS), default="jsonl")
    export.add_argument("-o", "--output", type=Path, default=None, help="Output file")

    stats = sub.add_parser("stats", help="Show session totals for a user")
    stats.add_argument("--user", type=int, required=True)

    return parser


def _run_backup(runtime: AppRuntime, args: argparse.Namespace, backup_directory: str, formatter: SessionFormatter) -> int:
    if args.chat is not None:
        snapshot = runtime.backups.backup_chat(args.user, args.chat)
    else:
        snapshot = runtime.backups.backup_group_chat(args.user, args.group)

    output = args.output or resolve_path(backup_directory) / default_backup_filename(snapshot)
    write_snapshot(snapshot, output)
    for line in formatter.format_backup_summary_lines(snapshot):
        print(line)
    print(f"Written to {output}")
    return 0


def _run_verify(runtime: AppRuntime, args: argparse.Namespace, formatter: SessionFormatter) -> int:
    snapshot = read_snapshot(args.file)
    for line in formatter.format_backup_summary_lines(snapshot):
        print(line)
    if runtime.backups.verify_integrity(snapshot):
        print("Integrity: OK")
        return 0
    logger.error(f"Integrity check failed for {args.file}")
    return 1


def _run_restore(runtime: AppRuntime, args: argparse.Namespace) -> int:
    snapshot = read_snapshot(args.file)
    new_id = runtime.backups.restore_from_backup(args.user, snapshot)
    print(f"恢复成功: {snapshot.type} {new_id}")
    return 0


def _run_sessions(runtime: AppRuntime, args: argparse.Namespace, default_limit: int, formatter: SessionFormatter) -> int:
    if args.query:
        sessions = runtime.conversations.search_sessions(args.user, args.query)
    else:
        sessions = runtime.conversations.list_recent_sessions(args.user, limit=args.limit or default_limit)
    if not sessions:
        print("No sessions.")
    for session in sessions:
        print(formatter.format_session_list_entry(session))
    return 0


def _run_export(runtime: AppRuntime, args: argparse.Namespace, backup_directory: str) -> int:
    exported = runtime.exporter.export(args.user, args.chat, args.format)
    output = args.output or resolve_path(backup_directory) / exported.filename
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(exported.data, encoding="utf-8")
    print(f"Exported chat {args.chat} ({args.format}) to {output}")
    return 0


def _run_stats(runtime: AppRuntime, args: argparse.Namespace) -> int:
    stats = runtime.conversations.get_session_stats(args.user)
    print(f"Chats: {stats['total_chats']}")
    print(f"Group chats: {stats['total_groups']}")
    print(f"Messages: {stats['total_messages']}")
    print(f"Active in the last 7 days: {stats['active_sessions']}")
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    app = parse_app_config(load_json_config(args.config))
    runtime = bootstrap_runtime(app)
    if runtime.log_descriptions:
        logger.debug(f"Logging: {', '.join(runtime.log_descriptions)}")
    formatter = SessionFormatter(line_prefix="  ")

    try:
        if args.command == "backup":
            return _run_backup(runtime, args, app.backup_directory, formatter)
        if args.command == "verify":
            return _run_verify(runtime, args, formatter)
        if args.command == "restore":
            return _run_restore(runtime, args)
        if args.command == "export":
            return _run_export(runtime, args, app.backup_directory)
        if args.command == "stats":
            return _run_stats(runtime, args)
        return _run_sessions(runtime, args, app.recent_session_limit, formatter)
    except SessionBackupError as ex:
        logger.error(str(ex))
        return 1
    except OSError as ex:
        logger.error(f"File error: {ex}")
        return 1
    finally:
        runtime.db.close()


if __name__ == "__main__":
    sys.exit(main())
