from __future__ import annotations

import asyncio
import inspect
import json
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple, Union

from authcore.logging import get_logger
from authcore.service.errors import CacheLockTimeout

logger = get_logger(__name__)

Loader = Callable[[], Union[Any, Awaitable[Any]]]


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def release_lock(self, key: str, token: str) -> bool: ...


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    db_queries: int = 0

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total if self.total else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "db_queries": self.db_queries,
            "total": self.total,
            "hit_rate": round(self.hit_rate, 4),
        }


class MetricsRegistry:
    """Per-cache hit/miss/load counters shared by every CacheAside instance.

    One registry is created per runtime and injected, so tests get a clean
    set of counters by building a new runtime or calling ``reset()``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: Dict[str, CacheStats] = {}

    def _bucket(self, name: str) -> CacheStats:
        stats = self._stats.get(name)
        if stats is None:
            stats = self._stats[name] = CacheStats()
        return stats

    def record_hit(self, name: str) -> int:
        with self._lock:
            stats = self._bucket(name)
            stats.hits += 1
            return stats.total

    def record_miss(self, name: str) -> int:
        with self._lock:
            stats = self._bucket(name)
            stats.misses += 1
            return stats.total

    def record_db_query(self, name: str) -> None:
        with self._lock:
            self._bucket(name).db_queries += 1

    def snapshot(self, name: str) -> CacheStats:
        with self._lock:
            stats = self._stats.get(name) or CacheStats()
            return CacheStats(stats.hits, stats.misses, stats.db_queries)

    def snapshot_all(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: stats.as_dict() for name, stats in self._stats.items()}

    def reset(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                self._stats.clear()
            else:
                self._stats.pop(name, None)


class CacheAside:
    """Read-through cache with a short advisory lock against stampedes.

    Values are JSON-encoded, so ``None`` is a legitimate cached value and is
    how "not found" results get negatively cached.
    """

    def __init__(
        self,
        cache: CacheBackend,
        *,
        name: str,
        metrics: MetricsRegistry,
        lock_ttl_seconds: int = 5,
        retry_interval_seconds: float = 0.1,
        max_attempts: int = 20,
        metrics_log_interval: int = 100,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.cache = cache
        self.name = name
        self.metrics = metrics
        self.lock_ttl_seconds = lock_ttl_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self.max_attempts = max_attempts
        self.metrics_log_interval = metrics_log_interval
        self._sleep = sleep

    @staticmethod
    def lock_key(key: str) -> str:
        return f"lock:{key}"

    async def _read(self, key: str) -> Tuple[bool, Any]:
        raw = await self.cache.get(key)
        if raw is None:
            return False, None
        try:
            return True, json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache_entry_undecodable", cache=self.name, key=key)
            return False, None

    def _maybe_log(self, total: int) -> None:
        if self.metrics_log_interval and total % self.metrics_log_interval == 0:
            logger.info(
                "cache_metrics", cache=self.name, **self.metrics.snapshot(self.name).as_dict()
            )

    async def get_or_load(
        self,
        key: str,
        loader: Loader,
        ttl_seconds: int,
        *,
        ttl_for: Optional[Callable[[Any], int]] = None,
    ) -> Any:
        """Return the cached JSON value for ``key`` or populate it from ``loader``.

        ``loader`` may be sync or async and must return something JSON
        serialisable. ``ttl_for`` picks a TTL per loaded value (used for
        shorter negative caching). Raises ``CacheLockTimeout`` when another
        caller holds the population lock for every attempt.
        """
        lock_key = self.lock_key(key)
        miss_recorded = False
        for attempt in range(1, self.max_attempts + 1):
            found, value = await self._read(key)
            if found:
                self._maybe_log(self.metrics.record_hit(self.name))
                return value
            if not miss_recorded:
                self._maybe_log(self.metrics.record_miss(self.name))
                miss_recorded = True

            token = uuid.uuid4().hex
            if await self.cache.set_if_absent(lock_key, token, self.lock_ttl_seconds):
                try:
                    found, value = await self._read(key)
                    if found:
                        self._maybe_log(self.metrics.record_hit(self.name))
                        return value
                    result = loader()
                    if inspect.isawaitable(result):
                        result = await result
                    self.metrics.record_db_query(self.name)
                    ttl = ttl_for(result) if ttl_for else ttl_seconds
                    await self.cache.set(key, json.dumps(result), ttl)
                    return result
                finally:
                    await self.cache.release_lock(lock_key, token)

            if attempt < self.max_attempts:
                await self._sleep(self.retry_interval_seconds)

        logger.warning(
            "cache_lock_timeout",
            cache=self.name,
            key=key,
            attempts=self.max_attempts,
        )
        raise CacheLockTimeout(
            "cache population lock is busy, retry later",
            detail={"cache": self.name},
        )
