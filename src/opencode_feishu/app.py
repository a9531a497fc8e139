"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from typing import Optional

from opencode_feishu.config import AppConfig
from opencode_feishu.core.admission import MentionOnlyPolicy, build_admission_policy
from opencode_feishu.core.commands import CommandExecutor
from opencode_feishu.core.dedup import Deduplicator
from opencode_feishu.core.handler import MessageHandler
from opencode_feishu.core.history import HistoryIngestor
from opencode_feishu.core.orchestrator import ConversationOrchestrator
from opencode_feishu.core.pending import PendingReplyRegistry
from opencode_feishu.core.session import SessionDirectory
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.base import ChatPlatform
from opencode_feishu.messenger.feishu import FeishuAdapter
from opencode_feishu.opencode.client import AgentBackend, OpenCodeClient
from opencode_feishu.services.relay import StreamingRelay

logger = get_logger(__name__)


class BridgeApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        backend: Optional[AgentBackend] = None,
        platform: Optional[ChatPlatform] = None,
    ):
        self.config = config
        self.backend = backend or OpenCodeClient(config.opencode)
        self.platform = platform or FeishuAdapter(config.feishu)

        self.admission = build_admission_policy(config.bot)
        self.directory = SessionDirectory(self.backend, config.opencode.directory)
        self.registry = PendingReplyRegistry()
        self.relay = StreamingRelay(
            self.backend,
            self.platform,
            self.registry,
            reconnect_initial=config.relay.reconnect_initial,
            reconnect_max=config.relay.reconnect_max,
            show_reasoning=config.relay.show_reasoning,
        )
        self.orchestrator = ConversationOrchestrator(
            self.backend,
            self.platform,
            self.directory,
            self.registry,
            timeout=config.opencode.timeout,
            thinking_delay=config.bot.thinking_delay,
            default_model=config.opencode.model,
            default_agent=config.opencode.agent,
        )
        self.history = HistoryIngestor(
            self.platform,
            self.directory,
            self.backend,
            max_messages=config.bot.history_max_messages,
            tz=config.bot.timezone,
        )
        self.handler = MessageHandler(
            platform=self.platform,
            deduplicator=Deduplicator(),
            admission=self.admission,
            orchestrator=self.orchestrator,
            commands=CommandExecutor(self.backend, self.directory),
            command_prefix=config.bot.command_prefix,
        )

    async def start(self) -> None:
        """Initialize and start all components."""
        # 1. Backend reachability (informational; turns report their own errors)
        if await self.backend.health_check():
            logger.info("opencode_healthy", base_url=self.config.opencode.base_url)
        else:
            logger.warning("opencode_unreachable", base_url=self.config.opencode.base_url)

        # 2. Bot identity for mention matching
        if isinstance(self.admission, MentionOnlyPolicy):
            self.admission.self_id = await self.platform.fetch_self_id()
            logger.info("bot_identity", open_id=self.admission.self_id)

        # 3. Streaming relay
        if self.config.relay.enabled:
            await self.relay.start()

        # 4. Platform adapter
        self.platform.on_message(self.handler.handle)
        if self.config.bot.ingest_history_on_join:
            self.platform.on_bot_added(self._on_bot_added)
        await self.platform.start()

        logger.info(
            "bridge_started",
            group_policy=self.config.bot.group_policy,
            relay=self.config.relay.enabled,
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        try:
            await self.platform.stop()
        except Exception as e:
            logger.error("platform_stop_error", error=str(e))

        await self.relay.stop()

        if isinstance(self.backend, OpenCodeClient):
            await self.backend.close()
        logger.info("bridge_stopped")

    async def _on_bot_added(self, chat_id: str) -> None:
        count = await self.history.ingest(chat_id)
        logger.info("bot_added_history", chat_id=chat_id, message_count=count)
