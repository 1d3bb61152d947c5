"""
Redis-backed per-page processing locks.

Each stage (screenshot, ai_analysis, embedding, attributes) uses its own key
so different stages can work on the same page, and the same stage can work on
different pages, in parallel.

Key format: page:lock:{stage}:{page_id}
Value: Unix timestamp (seconds) when the lock was acquired

Staleness is computed here from the stored timestamp, not by Redis expiry.
There is no ownership token: any caller can release a lock or take over a
stale one, and two callers that both see the same stale lock can both
"acquire" it. Stage work must tolerate that rare double run.
"""

import logging
import time
from typing import Callable, Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 10


class PageLockService:
    """Timestamp locks keyed by (page id, stage)."""

    KEY_PREFIX = "page:lock"

    def __init__(
        self,
        redis: Redis,
        timeout: int = LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.timeout = timeout
        self._clock = clock

    def _key(self, page_id: int, stage: str) -> str:
        return f"{self.KEY_PREFIX}:{stage}:{page_id}"

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _decode(raw) -> Optional[int]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return int(raw)
        except (TypeError, ValueError):
            # Unparseable values are treated as infinitely old
            return 0

    async def acquire_lock(self, page_id: int, stage: str) -> bool:
        """Take the lock if it is free or stale. Returns False while another worker holds it."""
        key = self._key(page_id, stage)
        now = self._now()

        locked_at = self._decode(await self.redis.get(key))
        if locked_at is not None:
            age = now - locked_at
            if age < self.timeout:
                logger.debug(f"[PageLock] {stage}:{page_id} held ({age}s old), skipping")
                return False
            logger.info(f"[PageLock] Taking over stale lock {stage}:{page_id} ({age}s old)")

        await self.redis.set(key, str(now))
        logger.debug(f"[PageLock] Acquired {stage}:{page_id} at {now}")
        return True

    async def release_lock(self, page_id: int, stage: str) -> None:
        await self.redis.delete(self._key(page_id, stage))
        logger.debug(f"[PageLock] Released {stage}:{page_id}")

    async def is_locked(self, page_id: int, stage: str) -> bool:
        locked_at = self._decode(await self.redis.get(self._key(page_id, stage)))
        if locked_at is None:
            return False
        return self._now() - locked_at < self.timeout

    def get_lock_timeout(self) -> int:
        return self.timeout
