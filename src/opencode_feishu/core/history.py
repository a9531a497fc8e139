"""Group history ingestion: seed a session with chat history when the bot joins."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from opencode_feishu.core.session import ConversationIdentity, SessionDirectory
from opencode_feishu.core.types import ChatType
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.base import ChatPlatform
from opencode_feishu.messenger.models import HistoryMessage
from opencode_feishu.opencode.client import AgentBackend

logger = get_logger(__name__)

DEFAULT_MAX_MESSAGES = 50
DEFAULT_PAGE_SIZE = 50


class HistoryIngestor:
    """Fetches recent group messages and submits them as no-reply context."""

    def __init__(
        self,
        platform: ChatPlatform,
        directory: SessionDirectory,
        backend: AgentBackend,
        *,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        page_size: int = DEFAULT_PAGE_SIZE,
        tz: str = "Asia/Shanghai",
    ):
        self._platform = platform
        self._directory = directory
        self._backend = backend
        self._max_messages = max_messages
        self._page_size = page_size
        self._tz = ZoneInfo(tz)

    async def ingest(self, chat_id: str) -> int:
        """Inject the group's recent history into its session. Returns the message count."""
        logger.info("history_ingest_started", chat_id=chat_id, max_messages=self._max_messages)

        messages = await self._fetch_recent(chat_id)
        if not messages:
            logger.info("history_ingest_empty", chat_id=chat_id)
            return 0

        identity = ConversationIdentity(ChatType.GROUP, participant_id="", chat_id=chat_id)
        session = await self._directory.resolve(identity)
        await self._backend.submit_prompt(session.id, self.format_context(messages), no_reply=True)

        logger.info(
            "history_ingest_done",
            chat_id=chat_id,
            message_count=len(messages),
            session_id=session.id,
        )
        return len(messages)

    async def _fetch_recent(self, chat_id: str) -> list[HistoryMessage]:
        """Collect up to max_messages text messages, returned oldest first."""
        result: list[HistoryMessage] = []
        page_token: Optional[str] = None

        try:
            while len(result) < self._max_messages:
                page = await self._platform.list_messages(
                    chat_id,
                    page_size=min(self._page_size, self._max_messages - len(result)),
                    page_token=page_token,
                )
                if not page.items:
                    break
                for item in page.items:
                    if item.deleted or item.msg_type != "text" or not item.text.strip():
                        continue
                    result.append(item)
                    if len(result) >= self._max_messages:
                        break
                if not page.has_more or not page.page_token:
                    break
                page_token = page.page_token
        except Exception as e:
            logger.warning("history_fetch_failed", chat_id=chat_id, error=str(e))

        # the platform pages newest first
        result.reverse()
        return result

    def format_context(self, messages: list[HistoryMessage]) -> str:
        header = "\n".join(
            [
                "[Group chat history - messages sent before the bot joined. "
                "Background context only, do not reply]",
                f"Message count: {len(messages)}",
                "---",
            ]
        )
        lines = [
            f"[{self._format_time(m.create_time)}] "
            f"{'[Bot]' if m.sender_type == 'app' else f'[{m.sender_id}]'}: {m.text.strip()}"
            for m in messages
        ]
        return header + "\n" + "\n".join(lines)

    def _format_time(self, create_time: str) -> str:
        if not create_time.isdigit():
            return "unknown"
        moment = datetime.fromtimestamp(int(create_time) / 1000, tz=self._tz)
        return moment.strftime("%Y-%m-%d %H:%M:%S")
