"""
Post-crawl stage workers.

A worker pops page ids from its stage queue and, under the page's stage lock,
runs the stage and stamps the page's completion column. Lock-store outages
fail open: the work runs unlocked rather than stalling the pipeline.
"""

import logging
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Callable, Dict

from redis.exceptions import RedisError

from models import Page, utcnow
from page_store import STAGE_COLUMNS

logger = logging.getLogger(__name__)


class StageOutcome(str, Enum):
    DONE = "done"
    LOCKED = "locked"       # another worker holds a fresh lock
    MISSING = "missing"     # page id no longer in the store
    FAILED = "failed"


class StageWorker:
    """Base class for one stage. Subclasses implement process()."""

    def __init__(self, stage: str, store, locks, queue, clock: Callable[[], datetime] = utcnow):
        if stage not in STAGE_COLUMNS:
            raise ValueError(f"Unknown stage: {stage}")
        self.stage = stage
        self.store = store
        self.locks = locks
        self.queue = queue
        self._clock = clock

    async def process(self, page: Page) -> None:
        raise NotImplementedError

    async def _acquire(self, page_id: int) -> tuple:
        """Returns (may_proceed, lock_held)."""
        try:
            acquired = await self.locks.acquire_lock(page_id, self.stage)
        except RedisError as e:
            logger.warning(f"[{self.stage}] Lock store unavailable for page {page_id}, proceeding unlocked: {e}")
            return True, False
        return acquired, acquired

    async def _release(self, page_id: int) -> None:
        try:
            await self.locks.release_lock(page_id, self.stage)
        except RedisError as e:
            logger.warning(f"[{self.stage}] Failed to release lock for page {page_id}: {e}")

    async def run_once(self, page_id: int) -> StageOutcome:
        page = self.store.get_page(page_id)
        if page is None:
            logger.warning(f"[{self.stage}] Page {page_id} not found, skipping")
            return StageOutcome.MISSING

        proceed, held = await self._acquire(page_id)
        if not proceed:
            return StageOutcome.LOCKED

        try:
            await self.process(page)
            self.store.mark_stage_complete(page_id, self.stage, self._clock())
            logger.info(f"[{self.stage}] Page {page_id} done")
            return StageOutcome.DONE
        except Exception as e:
            logger.error(f"[{self.stage}] Page {page_id} failed: {e}")
            return StageOutcome.FAILED
        finally:
            if held:
                await self._release(page_id)

    async def drain(self, max_items: int = 100) -> Dict[str, int]:
        """Process queued page ids until the queue is empty or max_items were taken."""
        outcomes: Counter = Counter()
        taken = 0
        while taken < max_items:
            page_id = await self.queue.pop(self.stage)
            if page_id is None:
                break
            taken += 1
            outcome = await self.run_once(page_id)
            outcomes[outcome.value] += 1

        if taken:
            logger.info(f"[{self.stage}] Drained {taken} item(s): {dict(outcomes)}")
        return dict(outcomes)
