"""
Crawl Service FastAPI Application
Triggers incremental crawl runs and exposes run status, scheduler previews and lock state
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy import text

import config
from content_store import LocalContentStore
from events import DispatchingChannel, InMemoryChannel, RedisStageQueue, StageDispatcher, connect_redis
from fetcher import HttpFetcher
from link_graph import LinkGraphBookkeeper
from orchestrator import CrawlRun, DomainCrawlOrchestrator
from page_lock import PageLockService
from page_store import STAGE_COLUMNS, SqlPageStore
from scheduler import RecrawlPolicy, RecrawlPriorityScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances
settings: config.CrawlerSettings = None
store: SqlPageStore = None
scheduler: RecrawlPriorityScheduler = None
orchestrator: DomainCrawlOrchestrator = None
fetcher: HttpFetcher = None
redis_client = None
lock_service: PageLockService = None

# Crawl runs + queue
crawl_runs: Dict[str, CrawlRun] = {}
crawl_queue: List[str] = []  # ordered list of run_ids waiting to run
_crawl_running: bool = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    global settings, store, scheduler, orchestrator, fetcher, redis_client, lock_service

    logger.info("Initializing crawl service components...")

    settings = config.get_settings()
    store = SqlPageStore.from_url(config.DATABASE_URL)
    scheduler = RecrawlPriorityScheduler(store, RecrawlPolicy.from_settings(settings))
    bookkeeper = LinkGraphBookkeeper(store, LocalContentStore(config.CONTENT_STORE_PATH))

    redis_client = await connect_redis(config.REDIS_URL)
    if redis_client is not None:
        lock_service = PageLockService(redis_client)
        dispatcher = StageDispatcher(RedisStageQueue(redis_client), settings.screenshots_enabled)
        channel = DispatchingChannel(dispatcher)
    else:
        logger.warning("Redis not configured: locks unavailable, notifications stay in memory")
        lock_service = None
        channel = InMemoryChannel()

    fetcher = HttpFetcher(settings)
    orchestrator = DomainCrawlOrchestrator(store, scheduler, bookkeeper, fetcher, channel, settings)

    logger.info("Crawl service initialized successfully")

    yield

    await fetcher.aclose()
    if redis_client is not None:
        await redis_client.aclose()


app = FastAPI(
    title="MarketKing Crawl Service",
    description="Incremental e-commerce crawling with link-graph recrawl priority",
    version="1.0.0",
    lifespan=lifespan,
)


# Request/Response Models


class CrawlUpdateRequest(BaseModel):
    domain: Optional[str] = None
    limit: Optional[int] = None
    new_only: bool = False
    force: bool = False


# ── Health ────────────────────────────────────────────────────

@app.get("/health")
async def health():
    db_ok = False
    try:
        with store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    redis_status = "not configured"
    if redis_client is not None:
        try:
            await redis_client.ping()
            redis_status = "healthy"
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            redis_status = "unreachable"

    return {
        "status": "healthy" if db_ok and redis_status == "healthy" else "degraded",
        "service": "marketking-crawl",
        "database": {"status": "healthy" if db_ok else "unreachable"},
        "redis": {"status": redis_status},
        "runs": {"queued": len(crawl_queue), "running": _crawl_running},
    }


# ── Crawl runs ────────────────────────────────────────────────


def _cleanup_old_runs():
    """Remove completed/failed runs that ended more than an hour ago."""
    now = datetime.now(timezone.utc)
    stale = [
        rid for rid, run in crawl_runs.items()
        if run.status in ("completed", "failed") and run.ended_at
        and (now - datetime.fromisoformat(run.ended_at)).total_seconds() > 3600
    ]
    for rid in stale:
        del crawl_runs[rid]
    if stale:
        logger.info(f"Cleaned up {len(stale)} old crawl runs")


async def _process_crawl_queue():
    """Process crawl runs one at a time from the queue."""
    global _crawl_running
    if _crawl_running:
        return
    _crawl_running = True

    try:
        while crawl_queue:
            _cleanup_old_runs()

            run_id = crawl_queue[0]
            run = crawl_runs.get(run_id)
            if run is None:
                crawl_queue.pop(0)
                continue

            try:
                await orchestrator.run(run=run)
            except Exception as e:
                # orchestrator already marked the run failed
                logger.error(f"Crawl run {run_id} failed: {e}")

            crawl_queue.pop(0)
    finally:
        _crawl_running = False


@app.post("/crawl/update")
async def crawl_update(request: CrawlUpdateRequest):
    """Queue an incremental crawl run. Returns run_id for status polling."""
    if request.limit is not None and request.limit < 1:
        raise HTTPException(status_code=400, detail="limit must be at least 1")

    run = orchestrator.new_run(
        domain_filter=request.domain,
        limit=request.limit,
        new_only=request.new_only,
        force=request.force,
    )
    crawl_runs[run.run_id] = run
    crawl_queue.append(run.run_id)

    queue_pos = len(crawl_queue)
    logger.info(f"Queued crawl run {run.run_id} (domain={request.domain}, position {queue_pos})")

    asyncio.create_task(_process_crawl_queue())

    return {
        "run_id": run.run_id,
        "status": run.status,
        "limit": run.limit,
        "queue_position": queue_pos,
    }


@app.get("/crawl/runs")
async def list_runs():
    """List crawl runs with queue position."""
    runs = []
    for run in crawl_runs.values():
        d = run.to_dict()
        d["queue_position"] = crawl_queue.index(run.run_id) + 1 if run.run_id in crawl_queue else None
        runs.append(d)
    return {"runs": runs}


@app.get("/crawl/runs/{run_id}")
async def get_run(run_id: str, log_offset: int = 0):
    run = crawl_runs.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    d = run.to_dict()
    d["logs"] = run.logs[log_offset:]
    return d


# ── Scheduler preview ─────────────────────────────────────────

@app.get("/domains/{domain}/due")
async def domain_due(domain: str, limit: int = 20):
    """Pages the next crawl would fetch for a domain, in priority order."""
    row = store.get_domain(domain)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Domain not found: {domain}")

    pages = []
    for page in scheduler.due_candidates(row, limit):
        pages.append({
            "page_id": page.id,
            "url": page.url,
            "depth": page.depth,
            "frontier": page.is_frontier,
            "inbound_links_count": page.inbound_links_count,
            "effective_age_hours": None if page.is_frontier else round(scheduler.effective_age_hours(page), 2),
            "next_crawl_at": scheduler.next_crawl_time(page).isoformat(),
        })
    return {"domain": row.domain, "count": len(pages), "pages": pages}


# ── Locks ─────────────────────────────────────────────────────

@app.get("/locks/{stage}/{page_id}")
async def lock_state(stage: str, page_id: int):
    if stage not in STAGE_COLUMNS:
        raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")
    if lock_service is None:
        raise HTTPException(status_code=503, detail="Redis is not configured")

    return {
        "stage": stage,
        "page_id": page_id,
        "locked": await lock_service.is_locked(page_id, stage),
        "timeout_seconds": lock_service.get_lock_timeout(),
    }
