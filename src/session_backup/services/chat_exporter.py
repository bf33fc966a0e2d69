from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from html import escape

from loguru import logger

from session_backup.errors import SessionNotFoundError
from session_backup.storage.chats import ChatStore
from session_backup.storage.database import Database
from session_backup.storage.events import epoch_millis
from session_backup.storage.messages import MessageStore, SwipeStore
from session_backup.storage.models import ChatRecord, MessageRecord, SwipeRecord

# format -> (file extension, mime type)
EXPORT_FORMATS: dict[str, tuple[str, str]] = {
    "jsonl": ("jsonl", "application/jsonl"),
    "txt": ("txt", "text/plain"),
    "markdown": ("md", "text/markdown"),
    "html": ("html", "text/html"),
}

_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\s]')

_HTML_STYLE = """
        body { font-family: 'Segoe UI', Tahoma, sans-serif; max-width: 800px; margin: 0 auto; padding: 20px; background: #f5f5f5; }
        .header, .message { background: white; padding: 15px; border-radius: 8px; margin-bottom: 10px; }
        .message.user { background: #e3f2fd; }
        .message.system { background: #f5f5f5; font-style: italic; }
        .message-header { display: flex; justify-content: space-between; font-size: 0.9em; color: #666; }
        .message-name { font-weight: bold; }
        .message-content { line-height: 1.6; white-space: pre-wrap; }
"""


@dataclass(frozen=True)
class ChatExport:
    data: str
    filename: str
    mime_type: str


def format_millis(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, UTC).strftime("%Y/%m/%d %H:%M:%S")


def format_iso(value: str | None) -> str:
    if not value:
        return "未知"
    try:
        return datetime.fromisoformat(value).strftime("%Y/%m/%d %H:%M:%S")
    except ValueError:
        return value


class ChatExporter:
    """Renders a one-on-one chat as a SillyTavern-style JSONL file or as
    readable text, Markdown or HTML.

    Messages are written in sequence order and show the content of their
    selected swipe.
    """

    def __init__(self, db: Database, *, clock: Callable[[], int] = epoch_millis):
        self._chats = ChatStore(db)
        self._messages = MessageStore(db)
        self._swipes = SwipeStore(db)
        self._clock = clock

    def export(self, user_id: int, chat_id: int, fmt: str) -> ChatExport:
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"不支持的导出格式: {fmt}")
        chat = self._chats.find_owned(user_id, chat_id)
        if chat is None:
            raise SessionNotFoundError("chat", chat_id)

        messages = self._messages.find_by_session("chat", chat_id)
        swipes_by_message: dict[int, list[SwipeRecord]] = {}
        for swipe in self._swipes.find_by_message_ids([m.id for m in messages]) if messages else []:
            swipes_by_message.setdefault(swipe.message_id, []).append(swipe)

        renderers = {
            "jsonl": self._to_jsonl,
            "txt": self._to_text,
            "markdown": self._to_markdown,
            "html": self._to_html,
        }
        data = renderers[fmt](chat, messages, swipes_by_message)

        extension, mime_type = EXPORT_FORMATS[fmt]
        stem = _UNSAFE_FILENAME_CHARS.sub("_", chat.character_name or "unknown")
        filename = f"chat_{stem}_{self._clock()}.{extension}"
        logger.info(f"Exported chat {chat_id} for user {user_id} as {fmt} ({len(messages)} messages)")
        return ChatExport(data=data, filename=filename, mime_type=mime_type)

    def _active_content(self, message: MessageRecord, swipes: list[SwipeRecord]) -> str:
        for swipe in swipes:
            if swipe.swipe_index == message.swipe_id:
                return swipe.content
        return message.mes

    def _to_jsonl(self, chat: ChatRecord, messages: list[MessageRecord], swipes: dict[int, list[SwipeRecord]]) -> str:
        lines = [
            json.dumps(
                {
                    "user_name": chat.user_persona_name or "用户",
                    "character_name": chat.character_name or "角色",
                    "create_date": chat.created_at,
                    "chat_metadata": chat.chat_metadata or {},
                },
                ensure_ascii=False,
            )
        ]
        for message in messages:
            message_swipes = swipes.get(message.id, [])
            entry: dict = {
                "name": message.name,
                "is_user": message.is_user,
                "send_date": message.send_date,
                "mes": self._active_content(message, message_swipes),
            }
            if message.is_system:
                entry["is_system"] = True
            if message.is_name:
                entry["is_name"] = True
            if message.force_avatar:
                entry["force_avatar"] = message.force_avatar
            if len(message_swipes) > 1:
                entry["swipes"] = [s.content for s in message_swipes]
                entry["swipe_id"] = message.swipe_id
                entry["swipe_info"] = [
                    {
                        "send_date": s.send_date,
                        "gen_started": s.gen_started,
                        "gen_finished": s.gen_finished,
                        "gen_id": s.gen_id,
                        "extra": s.extra,
                    }
                    for s in message_swipes
                ]
            for key in ("gen_started", "gen_finished", "gen_id", "api", "model"):
                value = getattr(message, key)
                if value:
                    entry[key] = value
            if message.extra:
                entry["extra"] = message.extra
            lines.append(json.dumps(entry, ensure_ascii=False))
        return "\n".join(lines)

    def _to_text(self, chat: ChatRecord, messages: list[MessageRecord], swipes: dict[int, list[SwipeRecord]]) -> str:
        lines = [
            f"聊天记录：{chat.chat_name or '未命名'}",
            f"角色：{chat.character_name or '未知'}",
            f"创建时间：{format_iso(chat.created_at)}",
            "=" * 50,
            "",
        ]
        for message in messages:
            content = self._active_content(message, swipes.get(message.id, []))
            if message.is_system:
                lines.append(f"[系统] {content}")
            else:
                lines.extend([f"[{format_millis(message.send_date)}] {message.name}:", content, ""])
        return "\n".join(lines)

    def _to_markdown(
        self, chat: ChatRecord, messages: list[MessageRecord], swipes: dict[int, list[SwipeRecord]]
    ) -> str:
        lines = [
            f"# {chat.chat_name or '聊天记录'}",
            "",
            f"**角色**：{chat.character_name or '未知'}",
            f"**创建时间**：{format_iso(chat.created_at)}",
            "",
            "---",
            "",
        ]
        for message in messages:
            content = self._active_content(message, swipes.get(message.id, []))
            if message.is_system:
                lines.append(f"> *{content}*")
            else:
                lines.extend([f"## {message.name}", f"*{format_millis(message.send_date)}*", "", content])
            lines.append("")
        return "\n".join(lines)

    def _to_html(self, chat: ChatRecord, messages: list[MessageRecord], swipes: dict[int, list[SwipeRecord]]) -> str:
        title = escape(chat.chat_name or "聊天记录")
        blocks = []
        for message in messages:
            css_class = "system" if message.is_system else "user" if message.is_user else ""
            content = self._active_content(message, swipes.get(message.id, []))
            blocks.append(
                f'    <div class="message {css_class}">\n'
                f'        <div class="message-header">\n'
                f'            <span class="message-name">{escape(message.name)}</span>\n'
                f'            <span class="message-time">{format_millis(message.send_date)}</span>\n'
                f"        </div>\n"
                f'        <div class="message-content">{escape(content)}</div>\n'
                f"    </div>"
            )
        return (
            "<!DOCTYPE html>\n"
            '<html lang="zh-CN">\n'
            "<head>\n"
            '    <meta charset="UTF-8">\n'
            f"    <title>{title}</title>\n"
            f"    <style>{_HTML_STYLE}    </style>\n"
            "</head>\n"
            "<body>\n"
            '    <div class="header">\n'
            f"        <h1>{title}</h1>\n"
            f"        <p>角色：{escape(chat.character_name or '未知')}</p>\n"
            f"        <p>创建时间：{format_iso(chat.created_at)}</p>\n"
            "    </div>\n"
            + "\n".join(blocks)
            + "\n</body>\n</html>\n"
        )
