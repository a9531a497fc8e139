"""Abstract chat-platform adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from opencode_feishu.messenger.models import HistoryPage, InboundEvent, SendResult

MessageCallback = Callable[[InboundEvent], Awaitable[None]]
BotAddedCallback = Callable[[str], Awaitable[None]]


class ChatPlatform(ABC):
    """Base class for chat platform adapters.

    Outbound calls report failure through ``SendResult`` instead of raising so
    callers can pick a fallback path.
    """

    def __init__(self) -> None:
        self._message_callback: MessageCallback | None = None
        self._bot_added_callback: BotAddedCallback | None = None

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and begin receiving events."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> SendResult:
        """Send a new text message to a chat."""
        ...

    @abstractmethod
    async def update_text(self, message_id: str, text: str) -> SendResult:
        """Replace the text of a message previously sent by the bot."""
        ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        """Best-effort delete. Never raises."""
        ...

    @abstractmethod
    async def list_messages(
        self, chat_id: str, page_size: int, page_token: Optional[str] = None
    ) -> HistoryPage:
        """Fetch one page of chat history, newest first."""
        ...

    @abstractmethod
    async def fetch_self_id(self) -> Optional[str]:
        """Return the bot's own user id on the platform, if obtainable."""
        ...

    def on_message(self, callback: MessageCallback) -> None:
        """Register the callback invoked for every normalized inbound message."""
        self._message_callback = callback

    def on_bot_added(self, callback: BotAddedCallback) -> None:
        """Register the callback invoked when the bot joins a chat."""
        self._bot_added_callback = callback
