from __future__ import annotations

import threading
import time
from typing import Dict, Iterable, Optional, Set, Tuple


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Same async surface and the same atomicity guarantees within one process,
    which is what tests and the dev fallback need. Expiry is evaluated lazily
    on access.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Tuple[Set[str], Optional[float]]] = {}

    @staticmethod
    def _deadline(ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return time.monotonic() + max(ttl_seconds, 0)

    @staticmethod
    def _alive(deadline: Optional[float]) -> bool:
        return deadline is None or deadline > time.monotonic()

    def _read(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if not self._alive(deadline):
            self._values.pop(key, None)
            return None
        return value

    def _read_set(self, tag: str) -> Set[str]:
        entry = self._sets.get(tag)
        if entry is None:
            return set()
        members, deadline = entry
        if not self._alive(deadline):
            self._sets.pop(tag, None)
            return set()
        return members

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._values[key] = (value, self._deadline(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._read(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                if self._sets.pop(key, None) is not None:
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._read(key) is not None or bool(self._read_set(key))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._read(key) is not None:
                return False
            self._values[key] = (value, self._deadline(ttl_seconds))
            return True

    async def release_lock(self, key: str, token: str) -> bool:
        with self._lock:
            if self._read(key) != token:
                return False
            self._values.pop(key, None)
            return True

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = int(self._read(key) or 0) + 1
            self._values[key] = (str(current), self._deadline(ttl_seconds))
            return current

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds; ``None`` for missing or persistent keys."""
        with self._lock:
            if self._read(key) is None:
                return None
            deadline = self._values[key][1]
            return None if deadline is None else deadline - time.monotonic()

    async def add_to_tag(self, tag: str, keys: Iterable[str], ttl_seconds: int) -> None:
        members = list(keys)
        if not members:
            return
        with self._lock:
            current = self._read_set(tag)
            current.update(members)
            self._sets[tag] = (current, self._deadline(ttl_seconds))

    async def tag_members(self, tag: str) -> Set[str]:
        with self._lock:
            return set(self._read_set(tag))

    async def invalidate_tag(self, tag: str) -> int:
        with self._lock:
            removed = 0
            for key in self._read_set(tag):
                if self._read(key) is not None:
                    removed += 1
                self._values.pop(key, None)
            self._sets.pop(tag, None)
            return removed

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()

    async def close(self) -> None:
        self.clear()
