"""Periodic removal of expired sessions, one-time tokens and API keys."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional, Protocol

from authcore.logging import get_logger
from authcore.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
MIN_INTERVAL_SECONDS = 60


class ExpiringStore(Protocol):
    def delete_expired_sessions(self, now: datetime) -> int: ...

    def delete_expired_one_time_tokens(self, now: datetime) -> int: ...

    def delete_expired_api_keys(self, now: datetime) -> int: ...


@dataclass
class CleanupReport:
    sessions: int = 0
    one_time_tokens: int = 0
    api_keys: int = 0

    @property
    def total(self) -> int:
        return self.sessions + self.one_time_tokens + self.api_keys


class CleanupService:
    """Sweeps expired rows from the store.

    ``run_once`` is usable on its own (scripts, tests); ``start``/``stop``
    wrap it in a background loop for the app lifespan.
    """

    def __init__(
        self,
        store: ExpiringStore,
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.interval_seconds = max(interval_seconds, MIN_INTERVAL_SECONDS)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> CleanupReport:
        now = now or utcnow()
        report = CleanupReport(
            sessions=await asyncio.to_thread(self.store.delete_expired_sessions, now),
            one_time_tokens=await asyncio.to_thread(
                self.store.delete_expired_one_time_tokens, now
            ),
            api_keys=await asyncio.to_thread(self.store.delete_expired_api_keys, now),
        )
        logger.info("cleanup_completed", total=report.total, **asdict(report))
        return report

    async def start(self) -> None:
        if self._running:
            logger.warning("cleanup_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleanup_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("cleanup_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as exc:
                # The next tick retries; a failed sweep only delays deletion
                logger.error(
                    "cleanup_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.interval_seconds)
