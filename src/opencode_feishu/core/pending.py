"""Registry of in-flight replies shared by the orchestrator and the streaming relay."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class PendingReply:
    """A placeholder message awaiting its final text.

    Every write to the placeholder happens under ``lock``. Once the
    orchestrator delivers the final text it sets ``closed`` and later stream
    pushes are dropped, so the final reply is always the last write.
    ``revision`` counts placeholder writes. ``parts`` holds the streamed
    ``(kind, text)`` of each reply part, keyed by part id in arrival order.
    """

    session_id: str
    chat_id: str
    placeholder_message_id: str
    text: str = ""
    revision: int = 0
    closed: bool = False
    parts: dict[str, tuple[str, str]] = field(default_factory=dict, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class PendingReplyRegistry:
    """Maps session id -> PendingReply. At most one entry per session."""

    def __init__(self) -> None:
        self._by_session: dict[str, PendingReply] = {}

    def register(self, session_id: str, chat_id: str, placeholder_message_id: str) -> PendingReply:
        if session_id in self._by_session:
            raise RuntimeError(f"Session {session_id} already has a pending reply")
        reply = PendingReply(session_id, chat_id, placeholder_message_id)
        self._by_session[session_id] = reply
        return reply

    def get(self, session_id: str) -> Optional[PendingReply]:
        return self._by_session.get(session_id)

    def unregister(self, session_id: str) -> None:
        self._by_session.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._by_session

    def __len__(self) -> int:
        return len(self._by_session)
