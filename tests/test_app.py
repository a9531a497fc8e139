"""Tests for application wiring."""

import pytest

from conftest import make_event
from opencode_feishu.app import BridgeApp
from opencode_feishu.config import parse_config
from opencode_feishu.core.admission import MentionOnlyPolicy
from opencode_feishu.core.session import ConversationIdentity
from opencode_feishu.messenger.models import HistoryMessage, HistoryPage

CONFIG = """
feishu:
  app_id: cli_test
  app_secret: secret
bot:
  thinking_delay: 0
relay:
  enabled: false
"""


@pytest.fixture
def app(backend, platform):
    return BridgeApp(parse_config(CONFIG), backend=backend, platform=platform)


class TestBridgeApp:
    @pytest.mark.asyncio
    async def test_start_learns_bot_identity(self, app, platform):
        await app.start()

        assert isinstance(app.admission, MentionOnlyPolicy)
        assert app.admission.self_id == "ou_bot"
        assert platform.started is True
        assert platform._message_callback == app.handler.handle

        await app.stop()
        assert platform.started is False

    @pytest.mark.asyncio
    async def test_message_flows_to_backend(self, app, backend, platform):
        await app.start()
        event = make_event("ping")
        session = await app.directory.resolve(ConversationIdentity.from_event(event))
        backend.replies[session.id] = ["pong"]
        app.orchestrator._poll_interval = 0.01

        await platform._message_callback(event)

        assert platform.sent == [("oc_chat", "pong")]
        await app.stop()

    @pytest.mark.asyncio
    async def test_bot_added_ingests_history(self, app, backend, platform):
        platform.history = [
            HistoryPage(
                items=[
                    HistoryMessage("om_1", "text", "user", "ou_alice", "hello", "1704067200000"),
                ]
            )
        ]
        await app.start()

        await platform._bot_added_callback("oc_group")

        assert backend.submitted[0]["no_reply"] is True
        assert "hello" in backend.submitted[0]["text"]
        await app.stop()
