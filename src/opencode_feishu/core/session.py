"""Session directory mapping Feishu conversations to OpenCode sessions."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from opencode_feishu.core.serial import KeyedSerializer
from opencode_feishu.core.types import ChatType
from opencode_feishu.errors import NotFoundError
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.models import InboundEvent
from opencode_feishu.opencode.client import AgentBackend
from opencode_feishu.opencode.models import Session

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "feishu"
TITLE_PREFIX = "Feishu"
CACHE_TTL = 24 * 60 * 60.0  # seconds of inactivity


@dataclass(frozen=True, slots=True)
class ConversationIdentity:
    chat_type: ChatType
    participant_id: str
    chat_id: str

    @classmethod
    def from_event(cls, event: InboundEvent) -> ConversationIdentity:
        return cls(chat_type=event.chat_type, participant_id=event.sender_id, chat_id=event.chat_id)

    @property
    def session_key(self) -> str:
        key_id = self.participant_id if self.chat_type == ChatType.DIRECT else self.chat_id
        return f"{SESSION_KEY_PREFIX}-{self.chat_type}-{key_id}"

    @property
    def title_prefix(self) -> str:
        return f"{TITLE_PREFIX}-{self.session_key}-"


@dataclass(slots=True)
class DirectoryEntry:
    session_key: str
    session_id: str
    last_activity: float


def _title_timestamp(session: Session) -> int:
    suffix = session.title.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else 0


def _created_timestamp(session: Session) -> float:
    return session.created_at.timestamp() if session.created_at else 0.0


def pick_latest(candidates: list[Session]) -> Session:
    """Newest candidate by title timestamp, then by creation time."""
    return max(candidates, key=lambda s: (_title_timestamp(s), _created_timestamp(s)))


class SessionDirectory:
    """Caches identity -> session bindings and recovers or creates sessions lazily.

    The backend is the source of truth; cached ids are re-verified on every
    resolution and evicted as soon as the backend reports them missing.
    """

    def __init__(
        self,
        backend: AgentBackend,
        directory: Optional[str] = None,
        ttl: float = CACHE_TTL,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._directory = directory
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._cache: OrderedDict[str, DirectoryEntry] = OrderedDict()
        self._models: dict[str, str] = {}
        self._agents: dict[str, str] = {}
        self._resolving = KeyedSerializer()

    async def resolve(self, identity: ConversationIdentity) -> Session:
        """Return the live session for *identity*, recovering or creating it.

        Resolutions for the same conversation run one at a time, so messages
        arriving together on a cold cache share one session.
        """
        self.cleanup_expired()
        key = identity.session_key
        async with self._resolving.hold(key):
            return await self._resolve(identity, key)

    async def _resolve(self, identity: ConversationIdentity, key: str) -> Session:
        cached = self._cache.get(key)
        if cached:
            try:
                session = await self._backend.get_session(cached.session_id)
            except NotFoundError:
                logger.info("session_cache_stale", session_key=key, session_id=cached.session_id)
                self.evict(cached.session_id)
            else:
                self._touch(key, session.id)
                return session

        sessions = await self._backend.list_sessions()
        candidates = [s for s in sessions if s.id and s.title.startswith(identity.title_prefix)]
        if candidates:
            best = pick_latest(candidates)
            self._touch(key, best.id)
            logger.info("session_recovered", session_key=key, session_id=best.id)
            return best

        title = f"{identity.title_prefix}{int(self._clock() * 1000)}"
        session = await self._backend.create_session(title, self._directory)
        self._touch(key, session.id)
        logger.info("session_created", session_key=key, session_id=session.id)
        return session

    def bind(self, identity: ConversationIdentity, session_id: str) -> None:
        self._touch(identity.session_key, session_id)

    def evict(self, session_id: str) -> None:
        """Drop every cached binding that points at *session_id*."""
        for key in [k for k, e in self._cache.items() if e.session_id == session_id]:
            del self._cache[key]

    def current(self, identity: ConversationIdentity) -> Optional[str]:
        """Cached session id for *identity*, without touching the backend."""
        entry = self._cache.get(identity.session_key)
        return entry.session_id if entry else None

    async def switch_to(self, identity: ConversationIdentity, session_id: str) -> Session:
        """Rebind *identity* to an existing session. Raises NotFoundError if absent."""
        session = await self._backend.get_session(session_id)
        self._touch(identity.session_key, session.id)
        logger.info("session_switched", session_key=identity.session_key, session_id=session.id)
        return session

    async def delete(self, session_id: str) -> None:
        await self._backend.delete_session(session_id)
        self.evict(session_id)

    async def list_sessions(self) -> list[Session]:
        return await self._backend.list_sessions()

    def cleanup_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._cache.items() if now - e.last_activity > self._ttl]:
            del self._cache[key]

    def set_model(self, identity: ConversationIdentity, model: str) -> None:
        self._models[identity.session_key] = model

    def set_agent(self, identity: ConversationIdentity, agent: str) -> None:
        self._agents[identity.session_key] = agent

    def overrides(self, identity: ConversationIdentity) -> tuple[Optional[str], Optional[str]]:
        """Per-conversation (model, agent) overrides, if any were set."""
        key = identity.session_key
        return self._models.get(key), self._agents.get(key)

    def _touch(self, key: str, session_id: str) -> None:
        self._cache[key] = DirectoryEntry(key, session_id, self._clock())
        self._cache.move_to_end(key)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    def __len__(self) -> int:
        return len(self._cache)
