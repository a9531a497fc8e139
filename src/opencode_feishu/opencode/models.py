"""Typed views over OpenCode server JSON payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass(frozen=True, slots=True)
class Session:
    id: str
    title: str = ""
    created_at: Optional[datetime] = None
    model: Optional[str] = None
    agent: Optional[str] = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Session:
        created = (data.get("time") or {}).get("created") or data.get("createdAt")
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title") or ""),
            created_at=_parse_timestamp(created),
            model=data.get("model") if isinstance(data.get("model"), str) else None,
            agent=data.get("agent") if isinstance(data.get("agent"), str) else None,
        )


@dataclass(frozen=True, slots=True)
class MessagePart:
    type: str
    text: str = ""


@dataclass(frozen=True, slots=True)
class Message:
    role: str
    parts: list[MessagePart] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Message:
        info = data.get("info") or {}
        parts = [
            MessagePart(type=str(p.get("type", "")), text=str(p.get("text") or ""))
            for p in data.get("parts") or []
            if isinstance(p, dict)
        ]
        return cls(role=str(info.get("role") or data.get("role") or ""), parts=parts)

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if p.type == "text").strip()


@dataclass(frozen=True, slots=True)
class ModelInfo:
    id: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    id: str
    name: str = ""
    models: list[ModelInfo] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ProviderInfo:
        raw_models = data.get("models") or []
        if isinstance(raw_models, dict):
            raw_models = list(raw_models.values())
        models = [
            ModelInfo(id=str(m.get("id", "")), name=str(m.get("name") or m.get("id", "")))
            for m in raw_models
            if isinstance(m, dict)
        ]
        return cls(id=str(data.get("id", "")), name=str(data.get("name") or ""), models=models)


@dataclass(frozen=True, slots=True)
class AgentInfo:
    name: str
    description: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AgentInfo:
        return cls(
            name=str(data.get("name") or data.get("id") or ""),
            description=str(data.get("description") or ""),
        )


def latest_assistant_text(messages: list[Message]) -> str:
    """Text of the most recent assistant message, or "" if none."""
    for message in reversed(messages):
        if message.role == "assistant":
            return message.text
    return ""


def split_model(model: str) -> dict[str, str]:
    """Turn "provider/model" into the body shape OpenCode expects."""
    provider_id, _, model_id = model.partition("/")
    return {"providerID": provider_id, "modelID": model_id}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # OpenCode reports epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
