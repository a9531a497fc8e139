"""Error taxonomy shared by the bridge components."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BridgeError):
    """Missing or invalid configuration. Fatal at startup."""


class TransportError(BridgeError):
    """A backend or chat-platform call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(TransportError):
    """A referenced session or message does not exist."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class TurnTimeoutError(BridgeError):
    """A turn exceeded its wall-clock budget.

    Carries the last assistant text observed before the budget ran out so the
    caller can still finalize with it.
    """

    def __init__(self, message: str, last_text: str = ""):
        super().__init__(message)
        self.last_text = last_text


class ParseError(BridgeError):
    """An inbound payload could not be normalized."""
