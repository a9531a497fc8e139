"""Conversation orchestrator: one serialized, placeholder-backed turn per session.

A turn submits the user's text to OpenCode and then polls the session until
the latest assistant text stops changing or the turn budget runs out. While
that happens the streaming relay may push partial text into the placeholder
message; the orchestrator's final write always lands last.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from opencode_feishu.config import POLL_INTERVAL, STABLE_POLLS
from opencode_feishu.core.pending import PendingReply, PendingReplyRegistry
from opencode_feishu.core.serial import KeyedSerializer
from opencode_feishu.core.session import ConversationIdentity, SessionDirectory
from opencode_feishu.core.types import ChatType, TurnState
from opencode_feishu.errors import NotFoundError, TurnTimeoutError
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.base import ChatPlatform
from opencode_feishu.messenger.models import InboundEvent
from opencode_feishu.opencode.client import AgentBackend
from opencode_feishu.opencode.models import latest_assistant_text

logger = get_logger(__name__)

THINKING_TEXT = "⏳ Thinking…"
ERROR_PREFIX = "❌ "
TIMEOUT_NOTICE = "⚠️ Response timed out"
NO_REPLY_NOTICE = "[No reply]"


def compose_prompt(event: InboundEvent, text: str) -> str:
    """Prefix group messages with the sender so the agent can tell speakers apart."""
    if event.chat_type == ChatType.GROUP and event.sender_id:
        return f"[{event.sender_id}]: {text}"
    return text


def describe_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class PlaceholderTimer:
    """Sends the "thinking" placeholder after a delay unless settled first."""

    def __init__(
        self,
        platform: ChatPlatform,
        registry: PendingReplyRegistry,
        session_id: str,
        chat_id: str,
        delay: float,
    ):
        self._platform = platform
        self._registry = registry
        self._session_id = session_id
        self._chat_id = chat_id
        self._delay = delay
        self._fired = False
        self.reply: Optional[PendingReply] = None
        self._task: asyncio.Task[None] | None = (
            asyncio.create_task(self._run()) if delay > 0 else None
        )

    async def _run(self) -> None:
        await asyncio.sleep(self._delay)
        self._fired = True
        try:
            result = await self._platform.send_text(self._chat_id, THINKING_TEXT)
        except Exception as e:
            logger.warning("placeholder_send_error", chat_id=self._chat_id, error=str(e))
            return
        if result.ok and result.message_id:
            self.reply = self._registry.register(self._session_id, self._chat_id, result.message_id)
        else:
            logger.warning("placeholder_send_failed", chat_id=self._chat_id, error=result.error)

    @property
    def fired(self) -> bool:
        return self._fired

    def cancel(self) -> None:
        """Abort a pending or in-flight placeholder send. No-op once settled."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def settle(self) -> None:
        """Cancel the timer if it has not fired, else wait for its send to finish."""
        if self._task is None:
            return
        if not self._fired:
            self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class ConversationOrchestrator:
    """Runs conversational turns against OpenCode, one at a time per session."""

    def __init__(
        self,
        backend: AgentBackend,
        platform: ChatPlatform,
        directory: SessionDirectory,
        registry: PendingReplyRegistry,
        *,
        timeout: float = 120.0,
        thinking_delay: float = 2.5,
        poll_interval: float = POLL_INTERVAL,
        stable_polls: int = STABLE_POLLS,
        default_model: Optional[str] = None,
        default_agent: Optional[str] = None,
    ):
        self._backend = backend
        self._platform = platform
        self._directory = directory
        self._registry = registry
        self._timeout = timeout
        self._thinking_delay = thinking_delay
        self._poll_interval = poll_interval
        self._stable_polls = stable_polls
        self._default_model = default_model
        self._default_agent = default_agent
        self._serializer = KeyedSerializer()
        self._states: dict[str, TurnState] = {}

    def state(self, session_id: str) -> TurnState:
        return self._states.get(session_id, TurnState.IDLE)

    def _set_state(self, session_id: str, state: TurnState) -> None:
        if state == TurnState.IDLE:
            self._states.pop(session_id, None)
        else:
            self._states[session_id] = state
        logger.debug("turn_state", session_id=session_id, state=state.value)

    async def run_turn(self, event: InboundEvent, text: str, should_reply: bool = True) -> None:
        """Execute one turn for *event*. Failures are reported in chat, never raised."""
        if not text.strip():
            return

        identity = ConversationIdentity.from_event(event)
        try:
            session = await self._directory.resolve(identity)
        except Exception as e:
            logger.error(
                "session_resolve_failed",
                session_key=identity.session_key,
                error=describe_error(e),
            )
            if should_reply:
                await self._platform.send_text(event.chat_id, ERROR_PREFIX + describe_error(e))
            return

        prompt = compose_prompt(event, text)
        if not should_reply:
            await self._forward_silently(session.id, prompt)
            return

        if self.state(session.id) == TurnState.IDLE:
            self._set_state(session.id, TurnState.QUEUED)
        async with self._serializer.hold(session.id):
            try:
                await self._execute(event, identity, session.id, prompt)
            finally:
                self._registry.unregister(session.id)
                # this turn still counts as a holder until the context exits
                waiting = self._serializer.pending(session.id) > 1
                self._set_state(session.id, TurnState.QUEUED if waiting else TurnState.IDLE)

    async def _forward_silently(self, session_id: str, prompt: str) -> None:
        idle = self.state(session_id) == TurnState.IDLE
        if idle:
            self._set_state(session_id, TurnState.SILENT_FORWARD)
        try:
            await self._backend.submit_prompt(session_id, prompt, no_reply=True)
            logger.debug("silent_forward_done", session_id=session_id)
        except Exception as e:
            logger.warning("silent_forward_failed", session_id=session_id, error=describe_error(e))
        finally:
            if idle and self.state(session_id) == TurnState.SILENT_FORWARD:
                self._set_state(session_id, TurnState.IDLE)

    async def _execute(
        self,
        event: InboundEvent,
        identity: ConversationIdentity,
        session_id: str,
        prompt: str,
    ) -> None:
        model, agent = self._directory.overrides(identity)
        model = model or self._default_model
        agent = agent or self._default_agent

        self._set_state(session_id, TurnState.PLACEHOLDER_PENDING)
        timer = PlaceholderTimer(
            self._platform, self._registry, session_id, event.chat_id, self._thinking_delay
        )
        logger.info("turn_started", session_id=session_id, chat_id=event.chat_id)

        try:
            reply_text = await self._reply_text(session_id, prompt, model, agent, timer)
            await self._deliver(event.chat_id, timer.reply, reply_text)
        finally:
            # no placeholder send may outlive the turn
            timer.cancel()
        logger.info("turn_finished", session_id=session_id, length=len(reply_text))

    async def _reply_text(
        self,
        session_id: str,
        prompt: str,
        model: Optional[str],
        agent: Optional[str],
        timer: PlaceholderTimer,
    ) -> str:
        """Final text for the turn: the answer, a timeout notice, or an error."""
        try:
            timed_out = False
            try:
                last_text = await self._submit_and_wait(session_id, prompt, model, agent)
            except TurnTimeoutError as e:
                logger.warning("turn_timed_out", session_id=session_id, timeout=self._timeout)
                timed_out = True
                last_text = e.last_text

            self._set_state(session_id, TurnState.FINALIZING)
            await timer.settle()
            final_text = latest_assistant_text(await self._backend.get_messages(session_id))
            return final_text or last_text or (TIMEOUT_NOTICE if timed_out else NO_REPLY_NOTICE)
        except Exception as e:
            logger.error("turn_failed", session_id=session_id, error=describe_error(e))
            if isinstance(e, NotFoundError):
                self._directory.evict(session_id)
            self._set_state(session_id, TurnState.FINALIZING)
            await timer.settle()
            return ERROR_PREFIX + describe_error(e)

    async def _submit_and_wait(
        self,
        session_id: str,
        prompt: str,
        model: Optional[str],
        agent: Optional[str],
    ) -> str:
        """Submit, then poll until the assistant text is stable.

        Raises TurnTimeoutError, carrying the last seen text, once the turn
        budget is spent.
        """
        last_text = ""
        stable = 0
        deadline = asyncio.timeout(self._timeout)
        try:
            async with deadline:
                self._set_state(session_id, TurnState.SUBMITTED)
                await self._backend.submit_prompt(session_id, prompt, model=model, agent=agent)
                self._set_state(session_id, TurnState.POLLING)
                while True:
                    await asyncio.sleep(self._poll_interval)
                    text = latest_assistant_text(await self._backend.get_messages(session_id))
                    if text and text != last_text:
                        last_text = text
                        stable = 0
                    elif text:
                        stable += 1
                        if stable >= self._stable_polls:
                            return last_text
        except TimeoutError:
            if not deadline.expired():
                raise
            raise TurnTimeoutError(
                f"Turn exceeded {self._timeout}s", last_text=last_text
            ) from None

    async def _deliver(self, chat_id: str, reply: Optional[PendingReply], text: str) -> None:
        """Overwrite the placeholder if there is one, else send a new message."""
        if reply is not None:
            async with reply.lock:
                reply.closed = True
                reply.text = text
                reply.revision += 1
                result = await self._platform.update_text(reply.placeholder_message_id, text)
            if result.ok:
                return
            logger.warning(
                "placeholder_update_failed",
                message_id=reply.placeholder_message_id,
                error=result.error,
            )
            await self._platform.delete_message(reply.placeholder_message_id)

        result = await self._platform.send_text(chat_id, text)
        if not result.ok:
            logger.error("reply_send_failed", chat_id=chat_id, error=result.error)
