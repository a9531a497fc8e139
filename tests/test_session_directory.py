"""Tests for conversation identity and the session directory."""

import asyncio

import pytest

from conftest import make_event
from opencode_feishu.core.session import ConversationIdentity, SessionDirectory, pick_latest
from opencode_feishu.core.types import ChatType
from opencode_feishu.opencode.models import Session


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


DIRECT = ConversationIdentity(ChatType.DIRECT, participant_id="ou_alice", chat_id="oc_p2p")
GROUP = ConversationIdentity(ChatType.GROUP, participant_id="ou_alice", chat_id="oc_group")


class TestConversationIdentity:
    def test_direct_key_uses_participant(self):
        assert DIRECT.session_key == "feishu-direct-ou_alice"
        assert DIRECT.title_prefix == "Feishu-feishu-direct-ou_alice-"

    def test_group_key_uses_chat(self):
        assert GROUP.session_key == "feishu-group-oc_group"

    def test_group_members_share_a_key(self):
        bob = ConversationIdentity(ChatType.GROUP, participant_id="ou_bob", chat_id="oc_group")
        assert bob.session_key == GROUP.session_key

    def test_from_event(self):
        identity = ConversationIdentity.from_event(
            make_event("hi", ChatType.GROUP, chat_id="oc_g", sender_id="ou_x")
        )
        assert identity == ConversationIdentity(ChatType.GROUP, "ou_x", "oc_g")


class TestPickLatest:
    def test_newest_title_timestamp_wins(self):
        old = Session(id="a", title="Feishu-k-1000")
        new = Session(id="b", title="Feishu-k-2000")
        assert pick_latest([new, old]).id == "b"
        assert pick_latest([old, new]).id == "b"


class TestSessionDirectory:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def directory(self, backend, clock):
        return SessionDirectory(backend, clock=clock)

    @pytest.mark.asyncio
    async def test_creates_session_with_prefixed_title(self, directory, backend, clock):
        session = await directory.resolve(DIRECT)

        assert session.title == f"{DIRECT.title_prefix}{int(clock.now * 1000)}"
        assert backend.sessions[session.id] == session
        assert directory.current(DIRECT) == session.id

    @pytest.mark.asyncio
    async def test_cached_session_is_reused(self, directory, backend):
        first = await directory.resolve(DIRECT)
        second = await directory.resolve(DIRECT)
        assert first.id == second.id
        assert len(backend.sessions) == 1

    @pytest.mark.asyncio
    async def test_recovers_newest_existing_session(self, directory, backend):
        backend.add_session(f"{DIRECT.title_prefix}1000", "ses_old")
        backend.add_session(f"{DIRECT.title_prefix}3000", "ses_new")
        backend.add_session(f"{GROUP.title_prefix}9000", "ses_group")
        backend.add_session("unrelated", "ses_other")

        session = await directory.resolve(DIRECT)

        assert session.id == "ses_new"
        assert len(backend.sessions) == 4

    @pytest.mark.asyncio
    async def test_concurrent_cold_resolves_share_one_session(self, directory, backend):
        list_sessions = backend.list_sessions

        async def slow_list():
            sessions = await list_sessions()
            await asyncio.sleep(0.01)
            return sessions

        backend.list_sessions = slow_list

        first, second = await asyncio.gather(directory.resolve(DIRECT), directory.resolve(DIRECT))

        assert first.id == second.id
        assert len(backend.sessions) == 1

    @pytest.mark.asyncio
    async def test_stale_cache_entry_falls_through(self, directory, backend):
        first = await directory.resolve(DIRECT)
        del backend.sessions[first.id]

        second = await directory.resolve(DIRECT)

        assert second.id != first.id
        assert directory.current(DIRECT) == second.id

    @pytest.mark.asyncio
    async def test_switch_to_existing(self, directory, backend):
        await directory.resolve(DIRECT)
        other = backend.add_session("manual", "ses_manual")

        switched = await directory.switch_to(DIRECT, "ses_manual")

        assert switched == other
        assert (await directory.resolve(DIRECT)).id == "ses_manual"

    @pytest.mark.asyncio
    async def test_switch_to_missing_raises(self, directory):
        from opencode_feishu.errors import NotFoundError

        with pytest.raises(NotFoundError):
            await directory.switch_to(DIRECT, "ses_missing")

    @pytest.mark.asyncio
    async def test_delete_evicts_every_binding(self, directory, backend):
        session = await directory.resolve(DIRECT)
        directory.bind(GROUP, session.id)

        await directory.delete(session.id)

        assert directory.current(DIRECT) is None
        assert directory.current(GROUP) is None
        assert session.id not in backend.sessions

    @pytest.mark.asyncio
    async def test_idle_entries_expire(self, directory, clock):
        await directory.resolve(DIRECT)
        clock.now += 24 * 60 * 60 + 1
        directory.cleanup_expired()
        assert len(directory) == 0

    @pytest.mark.asyncio
    async def test_lru_bound(self, backend, clock):
        directory = SessionDirectory(backend, max_entries=2, clock=clock)
        for chat in ("a", "b", "c"):
            await directory.resolve(ConversationIdentity(ChatType.GROUP, "", f"oc_{chat}"))
        assert len(directory) == 2
        assert directory.current(ConversationIdentity(ChatType.GROUP, "", "oc_a")) is None

    def test_overrides_are_per_conversation(self, directory):
        directory.set_model(DIRECT, "anthropic/claude-sonnet-4")
        directory.set_agent(GROUP, "plan")
        assert directory.overrides(DIRECT) == ("anthropic/claude-sonnet-4", None)
        assert directory.overrides(GROUP) == (None, "plan")
