import io
import json
import os
import shutil
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch
from uuid import uuid4

from session_backup.__main__ import build_parser, main
from session_backup.services.conversation_manager import ConversationManager
from session_backup.storage import Database, EventEmitter


PROJECT_ROOT = Path(__file__).resolve().parents[1]


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"clitests-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = self._tmp_dir / "sessions.db"
        self._config = self._tmp_dir / "config.json"
        self._config.write_text(
            json.dumps(
                {
                    "DatabasePath": str(self._db_path),
                    "BackupDirectory": str(self._tmp_dir / "backups"),
                    "LogConsumers": [],
                }
            ),
            encoding="utf-8",
        )
        env = patch.dict(os.environ, {"SESSION_BACKUP_DB": ""})
        env.start()
        self.addCleanup(env.stop)

        db = Database(str(self._db_path))
        try:
            manager = ConversationManager(db, EventEmitter(db))
            self._chat_id = manager.create_chat(1, chat_name="魔法学习", character_name="艾莉丝")
            manager.append_message(1, "chat", self._chat_id, name="我", is_user=True, mes="你好", send_date=1000)
            manager.append_message(1, "chat", self._chat_id, name="艾莉丝", is_user=False, mes="欢迎", send_date=2000)
        finally:
            db.close()

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _run(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(["--config", str(self._config), *argv])
        return code, out.getvalue()

    def test_parser_requires_a_backup_target(self) -> None:
        with redirect_stdout(io.StringIO()), patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["backup", "--user", "1"])

    def test_backup_verify_restore_cycle(self) -> None:
        output = self._tmp_dir / "chat.json"

        code, text = self._run("backup", "--user", "1", "--chat", str(self._chat_id), "-o", str(output))
        self.assertEqual(0, code)
        self.assertIn("Messages: 2", text)
        self.assertTrue(output.exists())

        code, text = self._run("verify", str(output))
        self.assertEqual(0, code)
        self.assertIn("Integrity: OK", text)

        code, text = self._run("restore", "--user", "2", str(output))
        self.assertEqual(0, code)
        self.assertIn("恢复成功: chat", text)

        code, text = self._run("sessions", "--user", "2")
        self.assertEqual(0, code)
        self.assertIn("魔法学习 (恢复)", text)

    def test_backup_defaults_to_backup_directory(self) -> None:
        code, _ = self._run("backup", "--user", "1", "--chat", str(self._chat_id))
        self.assertEqual(0, code)
        written = list((self._tmp_dir / "backups").glob("chat-*.json"))
        self.assertEqual(1, len(written))

    def test_backup_of_foreign_session_fails(self) -> None:
        code, _ = self._run("backup", "--user", "2", "--chat", str(self._chat_id))
        self.assertEqual(1, code)

    def test_tampered_file_fails_verify_and_restore(self) -> None:
        output = self._tmp_dir / "chat.json"
        self._run("backup", "--user", "1", "--chat", str(self._chat_id), "-o", str(output))
        raw = json.loads(output.read_text(encoding="utf-8"))
        raw["data"]["messages"][0]["mes"] = "篡改"
        output.write_text(json.dumps(raw, ensure_ascii=False), encoding="utf-8")

        code, text = self._run("verify", str(output))
        self.assertEqual(1, code)
        self.assertNotIn("Integrity: OK", text)

        code, text = self._run("restore", "--user", "1", str(output))
        self.assertEqual(1, code)
        self.assertNotIn("恢复成功", text)

    def test_missing_file_is_reported(self) -> None:
        code, _ = self._run("verify", str(self._tmp_dir / "absent.json"))
        self.assertEqual(1, code)

    def test_export_writes_markdown_file(self) -> None:
        output = self._tmp_dir / "chat.md"

        code, text = self._run(
            "export", "--user", "1", "--chat", str(self._chat_id), "--format", "markdown", "-o", str(output)
        )

        self.assertEqual(0, code)
        self.assertIn("Exported chat", text)
        content = output.read_text(encoding="utf-8")
        self.assertTrue(content.startswith("# 魔法学习\n"))
        self.assertLess(content.index("你好"), content.index("欢迎"))

    def test_export_defaults_to_backup_directory(self) -> None:
        code, _ = self._run("export", "--user", "1", "--chat", str(self._chat_id))
        self.assertEqual(0, code)
        self.assertEqual(1, len(list((self._tmp_dir / "backups").glob("chat_艾莉丝_*.jsonl"))))

    def test_export_of_foreign_chat_fails(self) -> None:
        code, _ = self._run("export", "--user", "2", "--chat", str(self._chat_id), "--format", "txt")
        self.assertEqual(1, code)

    def test_stats_prints_totals(self) -> None:
        code, text = self._run("stats", "--user", "1")
        self.assertEqual(0, code)
        self.assertIn("Chats: 1", text)
        self.assertIn("Group chats: 0", text)
        self.assertIn("Messages: 2", text)

    def test_tampered_integrity_with_non_ascii_text_is_reported(self) -> None:
        output = self._tmp_dir / "chat.json"
        self._run("backup", "--user", "1", "--chat", str(self._chat_id), "-o", str(output))
        raw = json.loads(output.read_text(encoding="utf-8"))
        raw["integrity"] = "篡改"
        output.write_text(json.dumps(raw, ensure_ascii=False), encoding="utf-8")

        self.assertEqual(1, self._run("verify", str(output))[0])
        self.assertEqual(1, self._run("restore", "--user", "1", str(output))[0])

    def test_sessions_search(self) -> None:
        code, text = self._run("sessions", "--user", "1", "--query", "魔法")
        self.assertEqual(0, code)
        self.assertIn(f"[chat:{self._chat_id}] 魔法学习", text)

        code, text = self._run("sessions", "--user", "1", "--query", "不存在")
        self.assertEqual(0, code)
        self.assertIn("No sessions.", text)


if __name__ == "__main__":
    unittest.main()
