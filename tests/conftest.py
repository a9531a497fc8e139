"""Shared fakes for the bridge tests."""

from __future__ import annotations

import asyncio
import itertools
from typing import AsyncIterator, Optional

import pytest

from opencode_feishu.core.types import ChatType
from opencode_feishu.errors import NotFoundError
from opencode_feishu.messenger.base import ChatPlatform
from opencode_feishu.messenger.models import (
    HistoryPage,
    InboundEvent,
    Mention,
    SendResult,
)
from opencode_feishu.opencode.client import AgentBackend
from opencode_feishu.opencode.events import BackendEvent
from opencode_feishu.opencode.models import (
    AgentInfo,
    Message,
    MessagePart,
    ProviderInfo,
    Session,
)


def assistant(text: str) -> Message:
    return Message(role="assistant", parts=[MessagePart(type="text", text=text)])


def user(text: str) -> Message:
    return Message(role="user", parts=[MessagePart(type="text", text=text)])


class FakeBackend(AgentBackend):
    """In-memory OpenCode stand-in.

    ``replies[session_id]`` scripts the assistant text seen by successive
    ``get_messages`` calls; the last entry repeats forever.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}
        self.replies: dict[str, list[str]] = {}
        self.submitted: list[dict] = []
        self.submit_delay = 0.0
        self.submit_error: Optional[Exception] = None
        self.get_messages_error: Optional[Exception] = None
        self.healthy = True
        self.providers: list[ProviderInfo] = []
        self.agents: list[AgentInfo] = []
        self.events: asyncio.Queue[BackendEvent | Exception | None] = asyncio.Queue()
        self.subscribe_count = 0
        self.get_messages_calls = 0
        self._ids = itertools.count(1)

    def add_session(self, title: str, session_id: Optional[str] = None) -> Session:
        session = Session(id=session_id or f"ses_{next(self._ids)}", title=title)
        self.sessions[session.id] = session
        return session

    async def list_sessions(self) -> list[Session]:
        return list(self.sessions.values())

    async def create_session(self, title: str, directory: Optional[str] = None) -> Session:
        return self.add_session(title)

    async def get_session(self, session_id: str) -> Session:
        if session_id not in self.sessions:
            raise NotFoundError(f"Session not found: {session_id}")
        return self.sessions[session_id]

    async def delete_session(self, session_id: str) -> None:
        if session_id not in self.sessions:
            raise NotFoundError(f"Session not found: {session_id}")
        del self.sessions[session_id]

    async def submit_prompt(
        self,
        session_id: str,
        text: str,
        model: Optional[str] = None,
        agent: Optional[str] = None,
        no_reply: bool = False,
    ) -> None:
        self.submitted.append(
            {"session_id": session_id, "text": text, "model": model, "agent": agent, "no_reply": no_reply}
        )
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_error is not None:
            raise self.submit_error

    async def get_messages(self, session_id: str) -> list[Message]:
        self.get_messages_calls += 1
        if self.get_messages_error is not None:
            raise self.get_messages_error
        script = self.replies.get(session_id)
        if not script:
            return []
        text = script.pop(0) if len(script) > 1 else script[0]
        return [user("hi"), assistant(text)] if text else [user("hi")]

    async def subscribe_events(self) -> AsyncIterator[BackendEvent]:
        self.subscribe_count += 1
        while True:
            item = await self.events.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def health_check(self) -> bool:
        return self.healthy

    async def list_providers(self) -> list[ProviderInfo]:
        return self.providers

    async def list_agents(self) -> list[AgentInfo]:
        return self.agents


class FakePlatform(ChatPlatform):
    """Records outbound traffic instead of talking to Feishu."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[str, str]] = []
        self.updates: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.send_ok = True
        self.update_ok = True
        self.history: list[HistoryPage] = []
        self.history_error: Optional[Exception] = None
        self.self_id: Optional[str] = "ou_bot"
        self.started = False
        self._ids = itertools.count(1)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def send_text(self, chat_id: str, text: str) -> SendResult:
        self.sent.append((chat_id, text))
        if not self.send_ok:
            return SendResult(ok=False, error="send rejected")
        return SendResult(ok=True, message_id=f"om_{next(self._ids)}")

    async def update_text(self, message_id: str, text: str) -> SendResult:
        self.updates.append((message_id, text))
        if not self.update_ok:
            return SendResult(ok=False, message_id=message_id, error="update rejected")
        return SendResult(ok=True, message_id=message_id)

    async def delete_message(self, message_id: str) -> None:
        self.deleted.append(message_id)

    async def list_messages(
        self, chat_id: str, page_size: int, page_token: Optional[str] = None
    ) -> HistoryPage:
        if self.history_error is not None:
            raise self.history_error
        index = int(page_token) if page_token else 0
        if index >= len(self.history):
            return HistoryPage(items=[])
        return self.history[index]

    async def fetch_self_id(self) -> Optional[str]:
        return self.self_id


def make_event(
    content: str,
    chat_type: ChatType = ChatType.DIRECT,
    *,
    chat_id: str = "oc_chat",
    sender_id: str = "ou_user",
    message_id: str = "om_in_1",
    mentions: Optional[list[Mention]] = None,
) -> InboundEvent:
    return InboundEvent(
        chat_id=chat_id,
        message_id=message_id,
        message_type="text",
        content=content,
        chat_type=chat_type,
        sender_id=sender_id,
        mentions=mentions or [],
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def platform():
    return FakePlatform()
