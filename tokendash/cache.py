from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Callable

BULK_WINDOW_TTL_SECONDS = 5 * 60.0
SHORT_WINDOW_TTL_SECONDS = 60.0
DEFAULT_TTL_SECONDS = 15.0

_DAYS_7 = re.compile(r"[?&]days=7(?![0-9])")
_DAYS_1 = re.compile(r"[?&]days=1(?![0-9])")


@dataclass(frozen=True)
class CacheEntry:
    stored_at: float
    status: int
    body: Any
    # False when the upstream body was not valid JSON and is kept as raw text.
    is_json: bool = True


def ttl_for(key: str) -> float:
    """TTL in seconds for a cache key (the fully resolved upstream URL)."""
    if _DAYS_7.search(key):
        return BULK_WINDOW_TTL_SECONDS
    if _DAYS_1.search(key) or "market_chart" in key:
        return SHORT_WINDOW_TTL_SECONDS
    return DEFAULT_TTL_SECONDS


class TTLCache:
    # Never evicts: expired entries stay readable through get() for stale serving.

    def __init__(
        self,
        *,
        ttl_policy: Callable[[str], float] = ttl_for,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store: dict[str, CacheEntry] = {}
        self._ttl_policy = ttl_policy
        self._clock = clock

    def __len__(self) -> int:
        return len(self._store)

    def now(self) -> float:
        return self._clock()

    def ttl(self, key: str) -> float:
        return self._ttl_policy(key)

    def get(self, key: str) -> CacheEntry | None:
        return self._store.get(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        self._store[key] = entry

    def is_fresh(self, key: str, entry: CacheEntry, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return (now - entry.stored_at) < self._ttl_policy(key)

    def get_fresh(self, key: str) -> CacheEntry | None:
        entry = self._store.get(key)
        if entry is not None and self.is_fresh(key, entry):
            return entry
        return None
