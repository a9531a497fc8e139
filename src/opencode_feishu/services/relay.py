"""Streaming relay: pushes OpenCode event-stream updates into placeholder messages."""

from __future__ import annotations

import asyncio
import contextlib

from opencode_feishu.core.pending import PendingReplyRegistry
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.base import ChatPlatform
from opencode_feishu.messenger.models import SendResult
from opencode_feishu.opencode.client import AgentBackend
from opencode_feishu.opencode.events import (
    PART_REASONING,
    BackendEvent,
    PartUpdated,
    SessionError,
)
from opencode_feishu.services.base import Service

logger = get_logger(__name__)

SESSION_ERROR_PREFIX = "❌ Session error: "
REASONING_PREFIX = "🤔 "


def render_parts(parts: dict[str, tuple[str, str]]) -> str:
    """Join streamed parts in arrival order; reasoning gets a prefixed paragraph of its own."""
    return "".join(
        f"{REASONING_PREFIX}{text}\n\n" if kind == PART_REASONING else text
        for kind, text in parts.values()
        if text
    )


class StreamingRelay(Service):
    """Keeps one subscription to the OpenCode event stream for the process lifetime.

    Reconnects with exponential backoff (reset after a successful connect)
    until stopped. Stopping is cooperative: the flag is checked between
    events and an in-flight event is allowed to finish.
    """

    def __init__(
        self,
        backend: AgentBackend,
        platform: ChatPlatform,
        registry: PendingReplyRegistry,
        *,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 30.0,
        stop_grace: float = 2.0,
        show_reasoning: bool = True,
    ):
        self._backend = backend
        self._platform = platform
        self._registry = registry
        self._reconnect_initial = reconnect_initial
        self._reconnect_max = max(reconnect_max, reconnect_initial)
        self._stop_grace = stop_grace
        self._show_reasoning = show_reasoning
        self._stopping = False
        self._connected = False
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def service_name(self) -> str:
        return "streaming_relay"

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stopping = False
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name="streaming-relay")
        logger.info("relay_started")

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._stop_grace)
        except TimeoutError:
            # blocked on the next stream item; nothing in flight to protect
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def health_check(self) -> bool:
        return self._task is not None and not self._task.done() and self._connected

    async def _run(self) -> None:
        delay = self._reconnect_initial
        while not self._stopping:
            logger.info("relay_connecting")
            stream = None
            try:
                stream = self._backend.subscribe_events()
                async for event in stream:
                    if not self._connected:
                        self._connected = True
                        delay = self._reconnect_initial
                    if self._stopping:
                        break
                    await self.handle_event(event)
                if not self._stopping:
                    logger.warning("relay_stream_ended", retry_in=delay)
            except Exception as e:
                logger.warning("relay_disconnected", error=str(e), retry_in=delay)
            finally:
                self._connected = False
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    with contextlib.suppress(Exception):
                        await aclose()

            if self._stopping:
                break
            await self._backoff(delay)
            delay = min(delay * 2, self._reconnect_max)
        logger.info("relay_stopped")

    async def _backoff(self, delay: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=delay)

    async def handle_event(self, event: BackendEvent) -> None:
        match event:
            case PartUpdated():
                await self._on_part_updated(event)
            case SessionError():
                await self._on_session_error(event)
            case _:
                pass

    async def _on_part_updated(self, event: PartUpdated) -> None:
        if event.kind == PART_REASONING and not self._show_reasoning:
            return
        reply = self._registry.get(event.session_id)
        if reply is None:
            return

        async with reply.lock:
            if reply.closed:
                return
            _, current = reply.parts.get(event.part_id, (event.kind, ""))
            if event.delta:
                current += event.delta
            elif event.full_text is not None:
                # full text replaces the part; appending would duplicate it
                current = event.full_text
            else:
                return
            reply.parts[event.part_id] = (event.kind, current)
            reply.text = render_parts(reply.parts)
            text = reply.text.strip()
            if not text:
                return
            reply.revision += 1
            try:
                await self._platform.update_text(reply.placeholder_message_id, text)
            except Exception as e:
                logger.debug("relay_update_failed", session_id=event.session_id, error=str(e))

    async def _on_session_error(self, event: SessionError) -> None:
        reply = self._registry.get(event.session_id)
        if reply is None:
            return

        text = SESSION_ERROR_PREFIX + event.message
        async with reply.lock:
            if reply.closed:
                return
            reply.revision += 1
            if (await self._safe_call(self._platform.update_text(reply.placeholder_message_id, text))).ok:
                return
            if (await self._safe_call(self._platform.send_text(reply.chat_id, text))).ok:
                return
        logger.error(
            "relay_error_report_failed", session_id=event.session_id, error=event.message
        )

    @staticmethod
    async def _safe_call(call) -> SendResult:
        try:
            return await call
        except Exception as e:
            return SendResult(ok=False, error=str(e))
