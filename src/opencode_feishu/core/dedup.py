"""Event deduplication: Feishu may deliver the same event more than once."""

from __future__ import annotations

import time
from typing import Callable, Optional

SEEN_TTL = 10 * 60.0  # seconds


class Deduplicator:
    """Remembers event ids for a TTL window and rejects repeats."""

    def __init__(self, ttl: float = SEEN_TTL, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._seen: dict[str, float] = {}

    def is_duplicate(self, event_id: Optional[str]) -> bool:
        """Sweep expired ids, then check and record *event_id*.

        Empty ids cannot be deduplicated and always pass.
        """
        now = self._clock()
        expired = [k for k, seen_at in self._seen.items() if now - seen_at > self._ttl]
        for k in expired:
            del self._seen[k]

        if not event_id:
            return False
        if event_id in self._seen:
            return True
        self._seen[event_id] = now
        return False

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
