"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class ChatType(StrEnum):
    DIRECT = "direct"
    GROUP = "group"


class TurnState(StrEnum):
    """Lifecycle of one conversational turn for a session id."""

    IDLE = "idle"
    QUEUED = "queued"
    PLACEHOLDER_PENDING = "placeholder_pending"
    SUBMITTED = "submitted"
    POLLING = "polling"
    FINALIZING = "finalizing"
    SILENT_FORWARD = "silent_forward"
