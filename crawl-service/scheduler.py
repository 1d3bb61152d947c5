"""
Recrawl priority scheduling.

Formula:
    effective_age_hours = hours_since_crawl + inbound_links_count * hours_per_link
    due = effective_age_hours > max_interval_days * 24
          AND hours_since_crawl >= min_interval_minutes / 60

Each inbound link credits a page hours_per_link hours of age, so popular
pages come due sooner; the minimum interval stops hub pages from being
refetched every run. Never-crawled pages are always due and always rank first.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List

from models import Domain, Page, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecrawlPolicy:
    hours_per_link: float = 1
    min_interval_minutes: float = 20
    max_interval_days: float = 20

    @classmethod
    def from_settings(cls, settings) -> "RecrawlPolicy":
        return cls(
            hours_per_link=settings.hours_per_link,
            min_interval_minutes=settings.min_interval_minutes,
            max_interval_days=settings.max_interval_days,
        )

    @property
    def max_interval_hours(self) -> float:
        return self.max_interval_days * 24

    @property
    def min_interval_hours(self) -> float:
        return self.min_interval_minutes / 60


class RecrawlPriorityScheduler:
    def __init__(self, store, policy: RecrawlPolicy = RecrawlPolicy(), clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.policy = policy
        self._clock = clock

    @staticmethod
    def hours_since(page: Page, now: datetime) -> float:
        return (now - page.last_crawled_at).total_seconds() / 3600

    def effective_age_hours(self, page: Page, now: datetime = None) -> float:
        if page.last_crawled_at is None:
            return math.inf
        now = now or self._clock()
        return self.hours_since(page, now) + page.inbound_links_count * self.policy.hours_per_link

    def needs_recrawl(self, page: Page, now: datetime = None) -> bool:
        if page.last_crawled_at is None:
            return True
        now = now or self._clock()
        if self.hours_since(page, now) < self.policy.min_interval_hours:
            return False
        return self.effective_age_hours(page, now) > self.policy.max_interval_hours

    def next_crawl_time(self, page: Page, now: datetime = None) -> datetime:
        now = now or self._clock()
        if page.last_crawled_at is None:
            return now
        interval = self.policy.max_interval_hours - page.inbound_links_count * self.policy.hours_per_link
        interval = max(interval, self.policy.min_interval_hours)
        return page.last_crawled_at + timedelta(hours=interval)

    def crawled_cutoff(self, domain: Domain, now: datetime) -> datetime:
        """Latest last_crawled_at a page of this domain can have and still be due.

        Both bounds hold for every page: the minimum interval, and the maximum
        interval shortened by the largest inbound-link credit in the domain.
        """
        bonus = self.store.max_inbound_count(domain.id) * self.policy.hours_per_link
        floor = now - timedelta(hours=self.policy.min_interval_hours)
        ceiling = now - timedelta(hours=self.policy.max_interval_hours - bonus)
        return min(floor, ceiling)

    def due_candidates(
        self,
        domain: Domain,
        limit: int,
        new_only: bool = False,
        force: bool = False,
    ) -> List[Page]:
        """Pages of a domain to fetch next, most overdue first, at most `limit`.

        new_only: only never-crawled pages, oldest discovered first.
        force: every page, ignoring the due check, still ranked by priority.
        """
        if limit <= 0:
            return []

        # Frontier pages come back in discovery order
        frontier = self.store.list_pages(domain.id, new_only=True, limit=limit)
        if new_only:
            return frontier

        now = self._clock()
        if force:
            crawled = [p for p in self.store.list_pages(domain.id) if p.last_crawled_at is not None]
        elif len(frontier) >= limit:
            crawled = []
        else:
            crawled = self.store.list_pages(domain.id, crawled_before=self.crawled_cutoff(domain, now))
            crawled = [p for p in crawled if self.needs_recrawl(p, now)]

        crawled.sort(key=lambda p: (-self.effective_age_hours(p, now), p.id))
        candidates = (frontier + crawled)[:limit]

        logger.debug(
            f"{domain.domain}: {len(candidates)} candidates "
            f"({len(frontier)} frontier, {len(crawled)} due, force={force})"
        )
        return candidates
