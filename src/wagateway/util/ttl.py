from __future__ import annotations

import time
from collections.abc import Callable, Hashable


class ExpiringSet:
    """
    Process-local set whose members expire after `ttl_s` seconds.

    Used for short dedup windows and best-effort creation locks. It gives no
    cross-process guarantee.
    """

    def __init__(self, ttl_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._expires: dict[Hashable, float] = {}

    def _purge(self) -> None:
        now = self._clock()
        expired = [k for k, exp in self._expires.items() if exp <= now]
        for k in expired:
            del self._expires[k]

    def __contains__(self, key: Hashable) -> bool:
        self._purge()
        return key in self._expires

    def __len__(self) -> int:
        self._purge()
        return len(self._expires)

    def add(self, key: Hashable) -> bool:
        """Add `key`; returns False if it was already present."""

        self._purge()
        if key in self._expires:
            return False
        self._expires[key] = self._clock() + self.ttl_s
        return True

    def discard(self, key: Hashable) -> None:
        self._expires.pop(key, None)

    def clear(self) -> None:
        self._expires.clear()
