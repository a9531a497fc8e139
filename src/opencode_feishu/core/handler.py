"""Message handler: dedup -> admission -> routing -> command or conversational turn."""

from __future__ import annotations

from opencode_feishu.core.admission import AdmissionPolicy
from opencode_feishu.core.commands import CommandExecutor
from opencode_feishu.core.dedup import Deduplicator
from opencode_feishu.core.orchestrator import ERROR_PREFIX, ConversationOrchestrator, describe_error
from opencode_feishu.core.router import COMMAND_PREFIX, Command, route
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.base import ChatPlatform
from opencode_feishu.messenger.models import InboundEvent

logger = get_logger(__name__)


class MessageHandler:
    """Handles the full flow for one inbound chat message."""

    def __init__(
        self,
        platform: ChatPlatform,
        deduplicator: Deduplicator,
        admission: AdmissionPolicy,
        orchestrator: ConversationOrchestrator,
        commands: CommandExecutor,
        command_prefix: str = COMMAND_PREFIX,
    ):
        self._platform = platform
        self._dedup = deduplicator
        self._admission = admission
        self._orchestrator = orchestrator
        self._commands = commands
        self._prefix = command_prefix

    async def handle(self, event: InboundEvent) -> None:
        """Process an inbound message end-to-end. Never raises."""
        if self._dedup.is_duplicate(event.message_id):
            logger.debug("message_duplicate", message_id=event.message_id)
            return

        text = event.content.strip()
        if not text:
            return

        try:
            admitted = self._admission.should_admit(event.chat_type, text, event.mentions)
            logger.info(
                "message_received",
                chat_id=event.chat_id,
                message_id=event.message_id,
                chat_type=event.chat_type.value,
                admitted=admitted,
                preview=text[:80],
            )
            if not admitted:
                await self._orchestrator.run_turn(event, text, should_reply=False)
                return

            target = route(text, self._prefix)
            if isinstance(target, Command):
                await self._run_command(target, event)
            else:
                await self._orchestrator.run_turn(event, target.text, should_reply=True)
        except Exception as e:
            logger.error("message_handler_error", message_id=event.message_id, error=str(e))

    async def _run_command(self, command: Command, event: InboundEvent) -> None:
        try:
            reply = await self._commands.run(command, event)
        except Exception as e:
            logger.error("command_failed", command=command.name, error=describe_error(e))
            reply = ERROR_PREFIX + describe_error(e)
        result = await self._platform.send_text(event.chat_id, reply)
        if not result.ok:
            logger.error("command_reply_failed", chat_id=event.chat_id, error=result.error)
