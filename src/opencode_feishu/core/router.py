"""Route admitted text to a structured command or a conversational turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

COMMAND_PREFIX = "/"
COMMANDS = frozenset({"help", "models", "model", "session", "agents", "agent", "health"})


@dataclass(frozen=True, slots=True)
class Command:
    name: str
    args: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ChatTurn:
    text: str


Route = Union[Command, ChatTurn]


def route(raw_text: str, prefix: str = COMMAND_PREFIX) -> Route:
    """Classify *raw_text*.

    Prefixed text whose first token is not a known command is treated as a
    normal chat turn, prefix included.
    """
    raw = (raw_text or "").strip()
    if not raw:
        return ChatTurn("")

    if prefix and raw.startswith(prefix):
        tokens = raw[len(prefix):].split()
        if tokens:
            name = tokens[0].lower()
            args = tokens[1:]
            if name == "session" and args:
                return Command("session", [args[0].lower(), *args[1:]])
            if name in COMMANDS:
                return Command(name, args)

    return ChatTurn(raw)
