"""
Domain crawl orchestration.

One run walks the active domains in order with a single page budget:
- a domain with no pages is bootstrapped by fetching its root URL only;
- an established domain gets its due pages from the recrawl scheduler,
  fetched one at a time.
Per-page failures are counted and never stop the run.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from fetcher import FetchError
from link_graph import LinkGraphBookkeeper, SessionCache
from models import Domain, utcnow
from page_store import DomainNotFoundError
from scheduler import RecrawlPriorityScheduler

logger = logging.getLogger(__name__)


@dataclass
class DomainResult:
    domain: str
    mode: str = "incremental"       # bootstrap | incremental | skipped
    processed: int = 0
    errors: int = 0
    queue_size: int = 0
    unpublished: int = 0            # processed pages whose notification was lost

    @property
    def attempts(self) -> int:
        return self.processed + self.errors

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "mode": self.mode,
            "processed": self.processed,
            "errors": self.errors,
            "queue_size": self.queue_size,
            "unpublished": self.unpublished,
        }


@dataclass
class CrawlRun:
    run_id: str
    limit: int
    domain_filter: Optional[str] = None
    new_only: bool = False
    force: bool = False
    status: str = "queued"          # queued | running | completed | failed
    domains: List[DomainResult] = field(default_factory=list)
    current_url: str = ""
    errors: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    started_at: Optional[str] = None
    ended_at: Optional[str] = None

    MAX_LOGS = 2000

    def log(self, msg: str):
        ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
        self.logs.append(f"[{ts}] {msg}")
        if len(self.logs) > self.MAX_LOGS:
            self.logs = self.logs[:50] + self.logs[-(self.MAX_LOGS - 50):]

    @property
    def processed(self) -> int:
        return sum(d.processed for d in self.domains)

    @property
    def error_count(self) -> int:
        return sum(d.errors for d in self.domains)

    @property
    def attempts(self) -> int:
        return sum(d.attempts for d in self.domains)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "limit": self.limit,
            "domain_filter": self.domain_filter,
            "new_only": self.new_only,
            "force": self.force,
            "processed": self.processed,
            "errors": self.error_count,
            "domains": [d.to_dict() for d in self.domains],
            "current_url": self.current_url,
            "error_messages": self.errors[-10:],
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


class DomainCrawlOrchestrator:
    def __init__(
        self,
        store,
        scheduler: RecrawlPriorityScheduler,
        bookkeeper: LinkGraphBookkeeper,
        fetcher,
        channel,
        settings,
        renderer=None,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.scheduler = scheduler
        self.bookkeeper = bookkeeper
        self.fetcher = fetcher
        self.channel = channel
        self.settings = settings
        self.renderer = renderer
        self._sleep = sleep

    def new_run(
        self,
        domain_filter: Optional[str] = None,
        limit: Optional[int] = None,
        new_only: bool = False,
        force: bool = False,
    ) -> CrawlRun:
        return CrawlRun(
            run_id=uuid.uuid4().hex[:12],
            limit=self.settings.max_pages_per_run if limit is None else limit,
            domain_filter=domain_filter,
            new_only=new_only,
            force=force,
        )

    async def run(
        self,
        domain_filter: Optional[str] = None,
        limit: Optional[int] = None,
        new_only: bool = False,
        force: bool = False,
        run: Optional[CrawlRun] = None,
    ) -> CrawlRun:
        """Run one crawl session. Only domain lookup failures propagate."""
        run = run or self.new_run(domain_filter, limit, new_only, force)
        run.status = "running"
        run.started_at = datetime.now(timezone.utc).isoformat()
        logger.info(
            f"Crawl update started (domain={run.domain_filter}, limit={run.limit}, "
            f"new_only={run.new_only}, force={run.force})"
        )

        try:
            if run.domain_filter:
                domains = [self.store.require_active_domain(run.domain_filter)]
            else:
                domains = self.store.list_active_domains()
        except DomainNotFoundError as e:
            logger.warning(f"{e}, nothing to crawl")
            run.log(f"SKIP: {e}")
            domains = []
        except Exception as e:
            run.status = "failed"
            run.errors.append(f"Domain lookup failed: {str(e)[:200]}")
            run.ended_at = datetime.now(timezone.utc).isoformat()
            logger.error(f"Domain lookup failed: {e}")
            raise

        if domains:
            run.log(f"Found {len(domains)} active domain(s)")
        elif not run.domain_filter:
            logger.warning("No active domains found")
            run.log("No active domains found")

        try:
            for domain in domains:
                remaining = run.limit - run.attempts
                if remaining <= 0:
                    # Skipped domains are reported but their state is left untouched
                    run.domains.append(DomainResult(domain=domain.domain, mode="skipped"))
                    run.log(f"SKIP: {domain.domain}, limit of {run.limit} pages reached")
                    logger.info(f"Reached limit of {run.limit} pages, skipping {domain.domain}")
                    continue

                result = DomainResult(domain=domain.domain)
                run.domains.append(result)
                try:
                    await self._process_domain(domain, remaining, run, result)
                except SQLAlchemyError as e:
                    result.errors += 1
                    run.errors.append(f"{domain.domain}: storage error: {str(e)[:200]}")
                    run.log(f"ERROR: {domain.domain} session aborted: {str(e)[:120]}")
                    logger.error(f"Crawl session for {domain.domain} aborted by storage error: {e}")
                    continue

                run.log(
                    f"DOMAIN {domain.domain}: {result.mode}, processed={result.processed}, "
                    f"errors={result.errors}, queue={result.queue_size}"
                )
        except Exception as e:
            run.status = "failed"
            run.errors.append(f"Crawl run failed: {str(e)[:200]}")
            run.ended_at = datetime.now(timezone.utc).isoformat()
            logger.error(f"Crawl run {run.run_id} failed: {e}")
            raise

        run.current_url = ""
        run.status = "completed"
        run.ended_at = datetime.now(timezone.utc).isoformat()
        logger.info(
            f"Crawl update completed: {run.processed} processed, {run.error_count} errors "
            f"across {len(run.domains)} domain(s)"
        )
        return run

    # ── Per-domain session ─────────────────────────────────────────

    async def _process_domain(self, domain: Domain, budget: int, run: CrawlRun, result: DomainResult) -> None:
        if domain.page_budget is not None:
            budget = min(budget, domain.page_budget)
        cache = SessionCache(domain_id=domain.id)

        if self.store.count_pages(domain.id) == 0:
            result.mode = "bootstrap"
            run.log(f"New domain detected: {domain.domain}, fetching {domain.root_url}")
            await self._crawl_url(domain, domain.root_url, cache, result, run)
        else:
            candidates = self.scheduler.due_candidates(
                domain, budget, new_only=run.new_only, force=run.force
            )
            if not candidates:
                run.log(f"{domain.domain}: no pages need updating")
            else:
                run.log(f"{domain.domain}: {len(candidates)} pages to update")
            delay = self._delay_seconds(domain)
            for i, page in enumerate(candidates):
                if i and delay:
                    await self._sleep(delay)
                await self._crawl_url(domain, page.url, cache, result, run)

        self._finish_session(domain, result)

    async def _crawl_url(
        self,
        domain: Domain,
        url: str,
        cache: SessionCache,
        result: DomainResult,
        run: CrawlRun,
    ) -> None:
        run.current_url = url
        try:
            if domain.render_js and self.renderer is not None:
                rendered = await self.renderer.render(url)
                body, was_rendered = rendered.html, True
            else:
                fetched = await self.fetcher.fetch(url)
                body, was_rendered = fetched.body, False

            event = self.bookkeeper.handle_crawled(
                domain, url, body, cache=cache, was_rendered=was_rendered
            )
        except FetchError as e:
            result.errors += 1
            run.errors.append(str(e)[:200])
            run.log(f"FETCH ERROR: {e}")
            logger.warning(f"Failed to crawl page {url} ({domain.domain}): {e.reason}")
            return
        except Exception as e:
            result.errors += 1
            run.errors.append(f"{url}: {str(e)[:200]}")
            run.log(f"ERROR: {url}: {str(e)[:120]}")
            logger.error(f"Failed to process page {url} ({domain.domain}): {e}")
            return

        result.processed += 1
        try:
            await self.channel.publish(event)
        except (RedisError, OSError) as e:
            result.unpublished += 1
            run.log(f"NOTIFY FAILED: page {event.page_id} ({url})")
            logger.warning(f"Content-ready for page {event.page_id} not published: {e}")

    def _delay_seconds(self, domain: Domain) -> float:
        delay_ms = domain.request_delay_ms
        if delay_ms is None:
            delay_ms = self.settings.delay_ms
        return max(delay_ms, 0) / 1000

    def _finish_session(self, domain: Domain, result: DomainResult) -> None:
        self.bookkeeper.recompute_inbound_counts(domain)
        self.store.touch_domain_crawled(domain.id, utcnow())
        result.queue_size = self.store.count_frontier(domain.id)
        logger.info(
            f"Finished crawling {domain.domain}: processed={result.processed}, "
            f"errors={result.errors}, queued={result.queue_size}"
        )
