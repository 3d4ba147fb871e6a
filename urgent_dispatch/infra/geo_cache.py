# urgent_dispatch/infra/geo_cache.py
from __future__ import annotations
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Hashable, Iterable

from urgent_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _Entry:
    value: Any
    stored_at: float
    tags: frozenset = field(default_factory=frozenset)


class InMemoryTTLCache:
    """
    Lock-guarded in-process cache with a fixed TTL.

    Expired entries are evicted lazily on read (and by ``cleanup_expired``).
    Entries can carry tags, so a professional's location update drops every
    cached search that returned that professional.

    NOT shared between processes: each worker holds its own copy, which is
    acceptable because lookups are allowed to be eventually consistent.
    """

    def __init__(self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = Lock()

    def _expired(self, entry: _Entry, now: float) -> bool:
        return now - entry.stored_at >= self.ttl_seconds

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, tags: Iterable[Hashable] = ()) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, stored_at=self._clock(), tags=frozenset(tags))

    def invalidate_tag(self, tag: str) -> int:
        with self._lock:
            to_remove = [
                key for key, entry in self._entries.items()
                if tag in entry.tags or tag in key
            ]
            for key in to_remove:
                del self._entries[key]

        if to_remove:
            logger.debug(f"Geo cache: invalidated {len(to_remove)} entries for tag={tag}")
        return len(to_remove)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            to_remove = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in to_remove:
                del self._entries[key]

        if to_remove:
            logger.info(f"Geo cache cleanup: removed {len(to_remove)} expired entries")
        return len(to_remove)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Geo cache cleared")

    def size(self) -> int:
        with self._lock:
            return len(self._entries)
