"""Per-key serialization and spacing of generator calls.

One ``LLMRateLimiter`` is built at process start and handed to every stage
function. Calls sharing a key run one at a time, in arrival order, and no
call starts sooner than the key's interval after the previous one finished.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from cadence.config import Settings

log = logging.getLogger(__name__)

T = TypeVar("T")

INSIGHTS_KEY = "insights"
MANAGER_ANALYSIS_KEY = "manager-analysis"


class LLMRateLimiter:
    def __init__(self, intervals: dict[str, float] | None = None, default_interval: float = 0.0):
        self._intervals = dict(intervals or {})
        self._default_interval = default_interval
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_call: dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMRateLimiter:
        return cls({
            INSIGHTS_KEY: settings.insight_min_interval_seconds,
            MANAGER_ANALYSIS_KEY: settings.manager_analysis_min_interval_seconds,
        })

    def interval_for(self, key: str) -> float:
        return self._intervals.get(key, self._default_interval)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once every earlier call under ``key`` has finished and the interval has passed."""
        async with self._lock_for(key):
            last = self._last_call.get(key)
            if last is not None:
                wait = self.interval_for(key) - (time.monotonic() - last)
                if wait > 0:
                    log.debug("LLM rate limiter [%s]: waiting %.2fs", key, wait)
                    await asyncio.sleep(wait)
            try:
                return await fn()
            finally:
                self._last_call[key] = time.monotonic()
