"""Feishu (Lark) adapter: REST sender over httpx and events over the lark-oapi long connection."""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import threading
import time
from typing import Any, Callable, Coroutine, Optional

import httpx
import lark_oapi as lark
import lark_oapi.ws.client as lark_ws_client

from opencode_feishu.config import FeishuConfig
from opencode_feishu.core.types import ChatType
from opencode_feishu.errors import BridgeError, NotFoundError, ParseError, TransportError
from opencode_feishu.log import get_logger
from opencode_feishu.messenger.base import ChatPlatform
from opencode_feishu.messenger.models import (
    HistoryMessage,
    HistoryPage,
    InboundEvent,
    Mention,
    SendResult,
)

logger = get_logger(__name__)

_MENTION_PLACEHOLDER = re.compile(r"@_user_\d+\s*")
WS_STOP_TIMEOUT = 5.0


def _extract_text(content: Any) -> str:
    """Decode a Feishu text message body ('{"text": "..."}') and drop @ placeholders."""
    parsed = json.loads(content) if isinstance(content, str) else content
    if not isinstance(parsed, dict):
        raise ValueError("text content is not an object")
    text = str(parsed.get("text") or "")
    return _MENTION_PLACEHOLDER.sub("", text).strip()


def parse_message_event(event: dict[str, Any]) -> Optional[InboundEvent]:
    """Normalize an ``im.message.receive_v1`` event body.

    Returns None for message kinds the bridge ignores (non-text, sent by
    apps); raises ParseError when required fields are missing or malformed.
    """
    message = event.get("message")
    if not isinstance(message, dict):
        raise ParseError("event has no message")
    chat_id = message.get("chat_id")
    if not chat_id:
        raise ParseError("message has no chat_id")

    sender = event.get("sender") or {}
    if sender.get("sender_type") == "app":
        return None

    message_type = message.get("message_type") or "text"
    if message_type != "text" or not message.get("content"):
        return None
    try:
        text = _extract_text(message["content"])
    except ValueError as e:
        raise ParseError(f"malformed text content: {e}") from e

    mentions = [
        Mention(
            key=str(m.get("key") or ""),
            open_id=str((m.get("id") or {}).get("open_id") or ""),
            name=str(m.get("name") or ""),
        )
        for m in message.get("mentions") or []
        if isinstance(m, dict)
    ]
    chat_type = ChatType.DIRECT if message.get("chat_type") == "p2p" else ChatType.GROUP

    return InboundEvent(
        chat_id=str(chat_id),
        message_id=str(message.get("message_id") or ""),
        message_type=message_type,
        content=text,
        chat_type=chat_type,
        sender_id=str((sender.get("sender_id") or {}).get("open_id") or ""),
        root_id=message.get("root_id") or None,
        mentions=mentions,
    )


class TenantTokenManager:
    """Caches the tenant access token and refreshes it shortly before expiry."""

    REFRESH_BUFFER = 5 * 60

    def __init__(
        self,
        client: httpx.AsyncClient,
        app_id: str,
        app_secret: str,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._app_id = app_id
        self._app_secret = app_secret
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        async with self._lock:
            now = self._clock()
            if self._token and self._expires_at > now + self.REFRESH_BUFFER:
                return self._token

            try:
                response = await self._client.post(
                    "/open-apis/auth/v3/tenant_access_token/internal",
                    json={"app_id": self._app_id, "app_secret": self._app_secret},
                )
                data = response.json()
            except (httpx.RequestError, ValueError) as e:
                raise TransportError(f"Feishu token request failed: {e}") from e

            token = data.get("tenant_access_token")
            if data.get("code") != 0 or not token:
                raise TransportError(
                    f"Feishu token request rejected: {data.get('msg')} (code {data.get('code')})"
                )
            self._token = token
            self._expires_at = now + float(data.get("expire") or 7200)
            logger.info("feishu_token_refreshed", expires_in=data.get("expire"))
            return token


class FeishuAdapter(ChatPlatform):
    """Feishu platform adapter.

    Inbound events arrive over the SDK's websocket long connection, which
    needs no public endpoint. The SDK client blocks, so it runs on a daemon
    thread with its own event loop and hands each event back to the main loop,
    where it is handled on a background task.
    """

    def __init__(self, config: FeishuConfig, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__()
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.request_timeout,
            transport=transport,
        )
        self._tokens = TenantTokenManager(self._client, config.app_id, config.app_secret)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws_loop: asyncio.AbstractEventLoop | None = None
        self._ws_thread: threading.Thread | None = None
        self._stopping = False
        self._tasks: set[asyncio.Task[Any]] = set()

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        ws_client = lark.ws.Client(
            self._config.app_id,
            self._config.app_secret,
            event_handler=self.build_event_handler(),
            domain=self._config.base_url.rstrip("/"),
            log_level=lark.LogLevel.INFO,
        )
        self._ws_loop = asyncio.new_event_loop()
        self._ws_thread = threading.Thread(
            target=self._run_long_connection,
            args=(ws_client, self._ws_loop),
            name="feishu-ws",
            daemon=True,
        )
        self._ws_thread.start()
        logger.info(
            "feishu_adapter_started",
            app_id_prefix=self._config.app_id[:8] + "...",
            domain=self._config.base_url,
        )

    async def stop(self) -> None:
        self._stopping = True
        if self._ws_loop is not None:
            # already closed if the connection thread has exited
            with contextlib.suppress(RuntimeError):
                self._ws_loop.call_soon_threadsafe(self._ws_loop.stop)
        if self._ws_thread is not None:
            await asyncio.to_thread(self._ws_thread.join, WS_STOP_TIMEOUT)
            if self._ws_thread.is_alive():
                logger.warning("feishu_ws_stop_timeout", timeout=WS_STOP_TIMEOUT)
            self._ws_thread = None
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._client.aclose()
        logger.info("feishu_adapter_stopped")

    def _run_long_connection(
        self, ws_client: lark.ws.Client, ws_loop: asyncio.AbstractEventLoop
    ) -> None:
        asyncio.set_event_loop(ws_loop)
        # the SDK drives its websocket on a module-level loop bound at import
        lark_ws_client.loop = ws_loop
        try:
            ws_client.start()
        except Exception as e:
            if self._stopping:
                logger.debug("feishu_ws_loop_stopped")
            else:
                logger.error("feishu_ws_failed", error=str(e))
        finally:
            ws_loop.close()

    # -- inbound ---------------------------------------------------------

    def build_event_handler(self) -> lark.EventDispatcherHandler:
        # encrypt key and verification token only apply to HTTP callbacks
        return (
            lark.EventDispatcherHandler.builder("", "")
            .register_p2_im_message_receive_v1(self._on_sdk_event)
            .register_p2_im_chat_member_bot_added_v1(self._on_sdk_event)
            .build()
        )

    def _on_sdk_event(self, data: Any) -> None:
        """SDK callback, invoked on the connection thread."""
        loop = self._loop
        if loop is None or self._stopping:
            return
        body = json.loads(lark.JSON.marshal(data))
        loop.call_soon_threadsafe(self.dispatch, body)

    def dispatch(self, body: dict[str, Any]) -> None:
        """Route one event envelope (``header`` plus ``event``) to the registered callbacks."""
        header = body.get("header") or {}
        event_type = header.get("event_type")
        event = body.get("event") or {}

        match event_type:
            case "im.message.receive_v1":
                try:
                    inbound = parse_message_event(event)
                except ParseError as e:
                    logger.debug("feishu_event_dropped", event_id=header.get("event_id"), error=str(e))
                    return
                if inbound is not None and self._message_callback is not None:
                    self._spawn(self._message_callback(inbound), "message")
            case "im.chat.member.bot.added_v1":
                chat_id = event.get("chat_id")
                if chat_id and self._bot_added_callback is not None:
                    logger.info("feishu_bot_added", chat_id=chat_id)
                    self._spawn(self._bot_added_callback(str(chat_id)), "bot_added")
            case _:
                logger.debug("feishu_event_ignored", event_type=event_type)

    def _spawn(self, coro: Coroutine[Any, Any, None], kind: str) -> None:
        async def _guarded() -> None:
            try:
                await coro
            except Exception as e:
                logger.error("feishu_callback_error", kind=kind, error=str(e))

        task = asyncio.create_task(_guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- outbound --------------------------------------------------------

    async def _api(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = await self._tokens.get_token()
        try:
            response = await self._client.request(
                method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.RequestError as e:
            raise TransportError(f"Feishu {method} {path} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        code = data.get("code", 0 if response.is_success else response.status_code)
        if response.status_code == 404:
            raise NotFoundError(f"Feishu resource not found: {path}")
        if not response.is_success or code != 0:
            raise TransportError(
                f"Feishu {method} {path} failed: {data.get('msg') or response.status_code} (code {code})",
                status_code=response.status_code,
            )
        return data

    async def send_text(self, chat_id: str, text: str) -> SendResult:
        if not chat_id.strip():
            return SendResult(ok=False, error="No chat_id provided")
        try:
            data = await self._api(
                "POST",
                "/open-apis/im/v1/messages",
                params={"receive_id_type": "chat_id"},
                json={
                    "receive_id": chat_id.strip(),
                    "msg_type": "text",
                    "content": json.dumps({"text": text}, ensure_ascii=False),
                },
            )
        except BridgeError as e:
            logger.warning("feishu_send_failed", chat_id=chat_id, error=str(e))
            return SendResult(ok=False, error=str(e))
        return SendResult(ok=True, message_id=(data.get("data") or {}).get("message_id", ""))

    async def update_text(self, message_id: str, text: str) -> SendResult:
        try:
            await self._api(
                "PUT",
                f"/open-apis/im/v1/messages/{message_id}",
                json={"msg_type": "text", "content": json.dumps({"text": text}, ensure_ascii=False)},
            )
        except BridgeError as e:
            return SendResult(ok=False, message_id=message_id, error=str(e))
        return SendResult(ok=True, message_id=message_id)

    async def delete_message(self, message_id: str) -> None:
        try:
            await self._api("DELETE", f"/open-apis/im/v1/messages/{message_id}")
        except BridgeError as e:
            logger.debug("feishu_delete_failed", message_id=message_id, error=str(e))

    async def list_messages(
        self, chat_id: str, page_size: int, page_token: Optional[str] = None
    ) -> HistoryPage:
        params: dict[str, Any] = {
            "container_id_type": "chat",
            "container_id": chat_id,
            "sort_type": "ByCreateTimeDesc",
            "page_size": page_size,
        }
        if page_token:
            params["page_token"] = page_token
        data = (await self._api("GET", "/open-apis/im/v1/messages", params=params)).get("data") or {}

        items: list[HistoryMessage] = []
        for item in data.get("items") or []:
            text = ""
            if item.get("msg_type") == "text":
                try:
                    text = _extract_text((item.get("body") or {}).get("content") or "{}")
                except ValueError:
                    text = ""
            sender = item.get("sender") or {}
            items.append(
                HistoryMessage(
                    message_id=str(item.get("message_id") or ""),
                    msg_type=str(item.get("msg_type") or ""),
                    sender_type=str(sender.get("sender_type") or "unknown"),
                    sender_id=str(sender.get("id") or ""),
                    text=text,
                    create_time=str(item.get("create_time") or ""),
                    deleted=bool(item.get("deleted")),
                )
            )
        return HistoryPage(
            items=items,
            has_more=bool(data.get("has_more")),
            page_token=data.get("page_token") or None,
        )

    async def fetch_self_id(self) -> Optional[str]:
        try:
            data = await self._api("GET", "/open-apis/bot/v3/info")
        except BridgeError as e:
            logger.warning("feishu_bot_info_failed", error=str(e))
            return None
        open_id = (data.get("bot") or {}).get("open_id")
        if not open_id:
            logger.warning("feishu_bot_open_id_empty")
        return open_id or None
