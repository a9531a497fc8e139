"""Per-key FIFO serialization for turn execution."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0  # running + waiting


class KeyedSerializer:
    """At most one holder per key; waiters for the same key run in arrival order.

    Different keys never block each other. Slots are dropped once no task is
    running or waiting on them.
    """

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        slot = self._slots.setdefault(key, _Slot())
        slot.holders += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.holders -= 1
            if slot.holders == 0 and self._slots.get(key) is slot:
                del self._slots[key]

    def pending(self, key: str) -> int:
        """Tasks currently running or queued for *key*."""
        slot = self._slots.get(key)
        return slot.holders if slot else 0

    def __len__(self) -> int:
        return len(self._slots)
