from __future__ import annotations

from dataclasses import dataclass, field

UNTITLED_CHAT_NAME = "未命名对话"


@dataclass(frozen=True)
class GroupMemberRecord:
    character_name: str
    character_card_id: int | None = None
    avatar_url: str | None = None
    display_order: int = 0


@dataclass(frozen=True)
class ChatRecord:
    id: int | None
    user_id: int
    chat_name: str | None = None
    novel_id: int | None = None
    character_card_id: int | None = None
    category_id: int | None = None
    character_name: str | None = None
    user_persona_name: str | None = None
    chat_metadata: dict = field(default_factory=dict)
    message_count: int = 0
    last_message_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def display_name(self) -> str:
        if self.chat_name:
            return self.chat_name
        if self.character_name:
            return f"与{self.character_name}的对话"
        return UNTITLED_CHAT_NAME


@dataclass(frozen=True)
class GroupChatRecord:
    id: int | None
    user_id: int
    group_name: str
    description: str | None = None
    avatar_url: str | None = None
    group_metadata: dict = field(default_factory=dict)
    message_count: int = 0
    last_message_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    members: tuple[GroupMemberRecord, ...] = ()

    @property
    def display_name(self) -> str:
        return self.group_name


@dataclass(frozen=True)
class MessageRecord:
    id: int | None
    mes_id: int
    name: str
    is_user: bool
    mes: str
    send_date: int
    chat_id: int | None = None
    group_chat_id: int | None = None
    message_type: str = "normal"
    is_system: bool = False
    is_name: bool = False
    force_avatar: str | None = None
    swipe_id: int = 0
    gen_started: int | None = None
    gen_finished: int | None = None
    gen_id: str | None = None
    api: str | None = None
    model: str | None = None
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SwipeRecord:
    id: int | None
    message_id: int
    swipe_index: int
    content: str
    send_date: int
    gen_started: int | None = None
    gen_finished: int | None = None
    gen_id: str | None = None
    extra: dict = field(default_factory=dict)
