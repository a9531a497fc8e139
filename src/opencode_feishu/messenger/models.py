"""Normalized chat-platform message models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from opencode_feishu.core.types import ChatType


@dataclass(frozen=True, slots=True)
class Mention:
    key: str  # placeholder in the raw text, e.g. "@_user_1"
    open_id: str = ""
    name: str = ""


@dataclass(frozen=True, slots=True)
class InboundEvent:
    chat_id: str
    message_id: str
    message_type: str
    content: str
    chat_type: ChatType
    sender_id: str
    root_id: Optional[str] = None
    mentions: list[Mention] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SendResult:
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class HistoryMessage:
    message_id: str
    msg_type: str
    sender_type: str  # "user" | "app"
    sender_id: str
    text: str
    create_time: str = ""  # epoch milliseconds as a string
    deleted: bool = False


@dataclass(frozen=True, slots=True)
class HistoryPage:
    items: list[HistoryMessage]
    has_more: bool = False
    page_token: Optional[str] = None
