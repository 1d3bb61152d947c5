"""
CLI entry point for the crawl service.
Usage: crawl-service update --domain example.com --limit 50
"""

import asyncio
import logging
from typing import List, Optional

import typer
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import config
from content_store import LocalContentStore
from events import (
    DispatchingChannel, InMemoryChannel, RedisChannel, RedisStageQueue, StageDispatcher, connect_redis,
)
from fetcher import HttpFetcher
from link_graph import LinkGraphBookkeeper
from orchestrator import DomainCrawlOrchestrator
from page_lock import PageLockService
from page_store import STAGE_COLUMNS, SqlPageStore
from scheduler import RecrawlPolicy, RecrawlPriorityScheduler

app = typer.Typer(help="MarketKing crawl service CLI")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


# ── Service builders ───────────────────────────────────────────────


def _build_store() -> SqlPageStore:
    return SqlPageStore.from_url(config.DATABASE_URL)


def _build_content_store() -> LocalContentStore:
    return LocalContentStore(config.CONTENT_STORE_PATH)


def _build_fetcher(settings: config.CrawlerSettings) -> HttpFetcher:
    return HttpFetcher(settings)


async def _connect_redis():
    return await connect_redis(config.REDIS_URL)


def _build_embedding_stage(store, locks, queue):
    """Loads the embedding model and connects to Qdrant (slow, so only for the worker)."""
    from sentence_transformers import SentenceTransformer
    from embedding_stage import EmbeddingStage, make_qdrant_client

    logger.info(f"Loading embedding model {config.EMBEDDING_MODEL}...")
    model = SentenceTransformer(config.EMBEDDING_MODEL)
    client = make_qdrant_client(config.QDRANT_URL, config.QDRANT_API_KEY)
    return EmbeddingStage(store, locks, queue, _build_content_store(), model, client)


WORKERS = {"embedding": _build_embedding_stage}


# ── Commands ───────────────────────────────────────────────────────


@app.command()
def update(
    domain: Optional[str] = typer.Option(None, "--domain", help="Only crawl this domain"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Page budget for the whole run"),
    new_only: bool = typer.Option(False, "--new-only", help="Only fetch never-crawled pages"),
    force: bool = typer.Option(False, "--force", help="Recrawl every page regardless of schedule"),
    defer_dispatch: bool = typer.Option(
        False, "--defer-dispatch", help="Leave notifications on the content-ready list for `dispatch`"
    ),
):
    """Run one incremental crawl across the active domains."""
    try:
        run = asyncio.run(_update(domain, limit, new_only, force, defer_dispatch))
    except SQLAlchemyError as e:
        typer.echo(f"Crawl update failed: {e}", err=True)
        raise typer.Exit(code=1)

    for result in run.domains:
        typer.echo(
            f"{result.domain}: {result.mode}, processed={result.processed}, "
            f"errors={result.errors}, queue={result.queue_size}"
        )
    typer.echo(f"Total: processed={run.processed}, errors={run.error_count}")


async def _update(domain, limit, new_only, force, defer_dispatch=False):
    settings = config.get_settings()
    store = _build_store()
    bookkeeper = LinkGraphBookkeeper(store, _build_content_store())
    scheduler = RecrawlPriorityScheduler(store, RecrawlPolicy.from_settings(settings))

    redis_client = await _connect_redis()
    if redis_client is not None and defer_dispatch:
        channel = RedisChannel(redis_client)
    elif redis_client is not None:
        dispatcher = StageDispatcher(RedisStageQueue(redis_client), settings.screenshots_enabled)
        channel = DispatchingChannel(dispatcher)
    else:
        logger.warning("Running without Redis: content-ready notifications stay in memory")
        channel = InMemoryChannel()

    try:
        async with _build_fetcher(settings) as fetcher:
            orchestrator = DomainCrawlOrchestrator(
                store, scheduler, bookkeeper, fetcher, channel, settings,
            )
            return await orchestrator.run(
                domain_filter=domain, limit=limit, new_only=new_only, force=force,
            )
    finally:
        if redis_client is not None:
            await redis_client.aclose()


@app.command("add-domain")
def add_domain(
    name: str = typer.Argument(..., help="Hostname, e.g. example.com"),
    subdomain: Optional[List[str]] = typer.Option(None, "--subdomain", help="Allowed subdomain (repeatable)"),
    protocol: str = typer.Option("https", "--protocol", help="http or https"),
    inactive: bool = typer.Option(False, "--inactive", help="Register without crawling it"),
):
    """Register a domain to crawl."""
    if protocol not in ("http", "https"):
        typer.echo(f"Unsupported protocol: {protocol}", err=True)
        raise typer.Exit(code=1)

    store = _build_store()
    try:
        row = store.add_domain(
            name,
            allowed_subdomains=list(subdomain or []),
            crawl_settings={"protocol": protocol},
            is_active=not inactive,
        )
    except IntegrityError:
        typer.echo(f"Domain already registered: {name}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Added {row.domain} (id={row.id}, active={row.is_active})")


@app.command()
def due(
    domain: str = typer.Argument(..., help="Domain to preview"),
    limit: int = typer.Option(20, "--limit", help="Maximum candidates to list"),
):
    """Preview the pages the next crawl would fetch for a domain."""
    settings = config.get_settings()
    store = _build_store()
    row = store.get_domain(domain)
    if row is None:
        typer.echo(f"Unknown domain: {domain}", err=True)
        raise typer.Exit(code=1)

    scheduler = RecrawlPriorityScheduler(store, RecrawlPolicy.from_settings(settings))
    candidates = scheduler.due_candidates(row, limit)
    if not candidates:
        typer.echo(f"{row.domain}: no pages due")
        return

    for page in candidates:
        if page.is_frontier:
            typer.echo(f"NEW      {page.url}")
        else:
            age = scheduler.effective_age_hours(page)
            next_at = scheduler.next_crawl_time(page)
            typer.echo(f"{age:7.1f}h {page.url} (inbound={page.inbound_links_count}, next={next_at.isoformat()})")


@app.command()
def worker(
    stage: str = typer.Argument(..., help="Stage queue to drain"),
    max_items: int = typer.Option(100, "--max-items", help="Stop after this many pages"),
):
    """Drain one post-crawl stage queue."""
    if stage not in STAGE_COLUMNS:
        typer.echo(f"Unknown stage: {stage} (expected one of {', '.join(STAGE_COLUMNS)})", err=True)
        raise typer.Exit(code=1)
    if stage not in WORKERS:
        typer.echo(f"No worker is implemented for stage: {stage}", err=True)
        raise typer.Exit(code=1)

    outcomes = asyncio.run(_drain(stage, max_items))
    if outcomes is None:
        typer.echo("Redis is required to run stage workers", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{stage}: {outcomes or 'queue empty'}")


async def _drain(stage: str, max_items: int):
    redis_client = await _connect_redis()
    if redis_client is None:
        return None
    try:
        store = _build_store()
        stage_worker = WORKERS[stage](store, PageLockService(redis_client), RedisStageQueue(redis_client))
        return await stage_worker.drain(max_items)
    finally:
        await redis_client.aclose()


@app.command()
def dispatch(
    max_items: int = typer.Option(1000, "--max-items", help="Stop after this many notifications"),
):
    """Move content-ready notifications onto the stage queues."""
    moved = asyncio.run(_dispatch(max_items))
    if moved is None:
        typer.echo("Redis is required to dispatch notifications", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Dispatched {moved} notification(s)")


async def _dispatch(max_items: int):
    redis_client = await _connect_redis()
    if redis_client is None:
        return None
    try:
        settings = config.get_settings()
        dispatcher = StageDispatcher(RedisStageQueue(redis_client), settings.screenshots_enabled)
        return await dispatcher.drain_channel(RedisChannel(redis_client), max_items)
    finally:
        await redis_client.aclose()


@app.command()
def status():
    """Check database, Redis and Qdrant connectivity."""
    try:
        store = _build_store()
        domains = store.list_active_domains()
        typer.echo(f"Database: OK ({len(domains)} active domains)")
    except Exception as e:
        typer.echo(f"Database: FAIL ({e})")

    async def _redis_status():
        client = await _connect_redis()
        if client is None:
            return None
        try:
            return {stage: await RedisStageQueue(client).size(stage) for stage in STAGE_COLUMNS}
        finally:
            await client.aclose()

    sizes = asyncio.run(_redis_status())
    if sizes is None:
        typer.echo("Redis: FAIL (unreachable)")
    else:
        typer.echo(f"Redis: OK (queues: {', '.join(f'{k}={v}' for k, v in sizes.items())})")

    try:
        from embedding_stage import make_qdrant_client
        qdrant = make_qdrant_client(config.QDRANT_URL, config.QDRANT_API_KEY)
        collections = [c.name for c in qdrant.get_collections().collections]
        typer.echo(f"Qdrant: OK ({len(collections)} collections)")
    except Exception as e:
        typer.echo(f"Qdrant: FAIL ({e})")


if __name__ == "__main__":
    app()
