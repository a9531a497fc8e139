"""Agent backend abstraction and the OpenCode HTTP client."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import httpx

from opencode_feishu.config import OpenCodeConfig
from opencode_feishu.errors import NotFoundError, TransportError
from opencode_feishu.log import get_logger
from opencode_feishu.opencode.events import BackendEvent, iter_sse_events
from opencode_feishu.opencode.models import (
    AgentInfo,
    Message,
    ProviderInfo,
    Session,
    split_model,
)

logger = get_logger(__name__)


class AgentBackend(ABC):
    """Stateful agent backend the bridge talks to.

    Failures raise ``TransportError``; a missing session raises ``NotFoundError``.
    """

    @abstractmethod
    async def list_sessions(self) -> list[Session]:
        ...

    @abstractmethod
    async def create_session(self, title: str, directory: Optional[str] = None) -> Session:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def submit_prompt(
        self,
        session_id: str,
        text: str,
        model: Optional[str] = None,
        agent: Optional[str] = None,
        no_reply: bool = False,
    ) -> None:
        """Append a user turn. With *no_reply* the backend only records it."""
        ...

    @abstractmethod
    async def get_messages(self, session_id: str) -> list[Message]:
        ...

    @abstractmethod
    def subscribe_events(self) -> AsyncIterator[BackendEvent]:
        """Open the event channel. Iteration ends when the stream closes."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    @abstractmethod
    async def list_providers(self) -> list[ProviderInfo]:
        ...

    @abstractmethod
    async def list_agents(self) -> list[AgentInfo]:
        ...


class OpenCodeClient(AgentBackend):
    """OpenCode server REST + SSE client using httpx."""

    def __init__(self, config: OpenCodeConfig, transport: httpx.AsyncBaseTransport | None = None):
        self._directory = config.directory
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.request_timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _params(self, directory: Optional[str] = None) -> dict[str, str]:
        directory = directory or self._directory
        return {"directory": directory} if directory else {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.debug("opencode_http_error", method=method, path=path, status=status)
            if status == 404:
                raise NotFoundError(f"Not found: {path}") from e
            raise TransportError(
                f"OpenCode {method} {path} failed: HTTP {status}", status_code=status
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"OpenCode unreachable: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def list_sessions(self) -> list[Session]:
        data = await self._request("GET", "/session", params=self._params())
        if not isinstance(data, list):
            return []
        return [Session.from_json(s) for s in data if isinstance(s, dict)]

    async def create_session(self, title: str, directory: Optional[str] = None) -> Session:
        data = await self._request(
            "POST", "/session", params=self._params(directory), json={"title": title}
        )
        if not isinstance(data, dict) or not data.get("id"):
            raise TransportError(f"Failed to create OpenCode session: {data!r}")
        session = Session.from_json(data)
        logger.info("opencode_session_created", session_id=session.id, title=title)
        return session

    async def get_session(self, session_id: str) -> Session:
        data = await self._request("GET", f"/session/{session_id}", params=self._params())
        if not isinstance(data, dict) or not data.get("id"):
            raise NotFoundError(f"Session not found: {session_id}")
        return Session.from_json(data)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/session/{session_id}", params=self._params())
        logger.info("opencode_session_deleted", session_id=session_id)

    async def submit_prompt(
        self,
        session_id: str,
        text: str,
        model: Optional[str] = None,
        agent: Optional[str] = None,
        no_reply: bool = False,
    ) -> None:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model:
            body["model"] = split_model(model)
        if agent:
            body["agent"] = agent
        if no_reply:
            body["noReply"] = True
        # The prompt endpoint may hold the connection until the reply is
        # complete; completion is detected by polling instead.
        await self._request(
            "POST",
            f"/session/{session_id}/message",
            params=self._params(),
            json=body,
            timeout=None,
        )

    async def get_messages(self, session_id: str) -> list[Message]:
        data = await self._request(
            "GET", f"/session/{session_id}/message", params=self._params()
        )
        if not isinstance(data, list):
            return []
        return [Message.from_json(m) for m in data if isinstance(m, dict)]

    async def subscribe_events(self) -> AsyncIterator[BackendEvent]:
        try:
            async with self._client.stream(
                "GET", "/event", params=self._params(), timeout=httpx.Timeout(None, connect=10.0)
            ) as response:
                response.raise_for_status()
                logger.info("opencode_event_stream_connected")
                async for event in iter_sse_events(response.aiter_lines()):
                    yield event
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Event stream rejected: HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"Event stream failed: {e}") from e

    async def health_check(self) -> bool:
        try:
            data = await self._request("GET", "/global/health")
        except TransportError as e:
            logger.warning("opencode_health_check_failed", error=str(e))
            return False
        return isinstance(data, dict) and data.get("healthy") is True

    async def list_providers(self) -> list[ProviderInfo]:
        data = await self._request("GET", "/config/providers", params=self._params())
        raw = data.get("providers") if isinstance(data, dict) else data
        if not isinstance(raw, list):
            return []
        return [ProviderInfo.from_json(p) for p in raw if isinstance(p, dict)]

    async def list_agents(self) -> list[AgentInfo]:
        data = await self._request("GET", "/agent", params=self._params())
        if not isinstance(data, list):
            return []
        return [AgentInfo.from_json(a) for a in data if isinstance(a, dict)]
