"""OpenCode event-stream variants and SSE parsing."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union


PART_TEXT = "text"
PART_REASONING = "reasoning"


@dataclass(frozen=True, slots=True)
class PartUpdated:
    """Incremental update of a text or reasoning part in a session's reply."""

    session_id: str
    delta: Optional[str] = None
    full_text: Optional[str] = None
    part_id: str = ""
    kind: str = PART_TEXT


@dataclass(frozen=True, slots=True)
class SessionError:
    session_id: str
    message: str


@dataclass(frozen=True, slots=True)
class UnknownEvent:
    type: str


BackendEvent = Union[PartUpdated, SessionError, UnknownEvent]


def parse_event(data: dict[str, Any]) -> BackendEvent:
    """Map a raw event object onto one of the handled variants."""
    event_type = str(data.get("type") or "")
    props = data.get("properties") or {}
    if not isinstance(props, dict):
        return UnknownEvent(event_type)

    if event_type == "message.part.updated":
        part = props.get("part") or {}
        session_id = part.get("sessionID") or props.get("sessionID")
        kind = part.get("type")
        if not session_id or kind not in (PART_TEXT, PART_REASONING):
            return UnknownEvent(event_type)
        delta = props.get("delta")
        text = part.get("text")
        return PartUpdated(
            session_id=str(session_id),
            delta=delta if isinstance(delta, str) and delta else None,
            full_text=text if isinstance(text, str) else None,
            part_id=str(part.get("id") or ""),
            kind=kind,
        )

    if event_type == "session.error":
        session_id = props.get("sessionID")
        if not session_id:
            return UnknownEvent(event_type)
        return SessionError(session_id=str(session_id), message=_error_message(props.get("error")))

    return UnknownEvent(event_type)


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        if error.get("message"):
            return str(error["message"])
        if error.get("name"):
            return str(error["name"])
    return str(error)


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[BackendEvent]:
    """Decode Server-Sent Events lines into backend events.

    Multi-line ``data:`` fields are joined; frames that are not JSON objects
    are skipped.
    """
    buffer: list[str] = []
    async for line in lines:
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())
            continue
        if line.strip():
            # event:/id:/retry: fields and comments carry nothing we use
            continue
        if buffer:
            event = _decode("\n".join(buffer))
            buffer.clear()
            if event is not None:
                yield event
    if buffer:
        event = _decode("\n".join(buffer))
        if event is not None:
            yield event


def _decode(payload: str) -> Optional[BackendEvent]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return parse_event(data)
