"""
Content-ready notifications and per-stage work queues.

The crawler publishes one ContentReady per successfully ingested page. The
StageDispatcher turns each notification into page ids on the named stage
queues that the stage workers drain.
"""

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def connect_redis(url: str) -> Optional[Redis]:
    """Async Redis client, or None when Redis is unreachable."""
    client = Redis.from_url(url, decode_responses=False)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Redis connection failed ({e})")
        await client.aclose()
        return None
    logger.info(f"Redis connected: {url}")
    return client


@dataclass
class ContentReady:
    page_id: int
    raw_content_ref: Optional[str]
    was_rendered: bool = False
    discovered_links: List[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw) -> "ContentReady":
        if isinstance(raw, bytes):
            raw = raw.decode()
        data = json.loads(raw)
        return cls(
            page_id=int(data["page_id"]),
            raw_content_ref=data.get("raw_content_ref"),
            was_rendered=bool(data.get("was_rendered", False)),
            discovered_links=list(data.get("discovered_links", [])),
        )


# ── Notification channels ──────────────────────────────────────


class InMemoryChannel:
    """Collects notifications in a list (tests, dry runs, no Redis)."""

    def __init__(self):
        self.events: List[ContentReady] = []

    async def publish(self, event: ContentReady) -> None:
        self.events.append(event)


class RedisChannel:
    """Appends notifications to a Redis list consumed by the stage dispatcher."""

    KEY = "crawl:content-ready"

    def __init__(self, redis: Redis, key: str = KEY):
        self.redis = redis
        self.key = key

    async def publish(self, event: ContentReady) -> None:
        await self.redis.rpush(self.key, event.to_json())

    async def pop(self) -> Optional[ContentReady]:
        raw = await self.redis.lpop(self.key)
        if raw is None:
            return None
        return ContentReady.from_json(raw)


class DispatchingChannel:
    """Publishes straight into the stage dispatcher (single-process mode)."""

    def __init__(self, dispatcher: "StageDispatcher"):
        self.dispatcher = dispatcher

    async def publish(self, event: ContentReady) -> None:
        await self.dispatcher.dispatch(event)


# ── Stage queues ───────────────────────────────────────────────


class InMemoryStageQueue:
    def __init__(self):
        self._queues: Dict[str, deque] = {}

    async def push(self, stage: str, page_id: int) -> None:
        self._queues.setdefault(stage, deque()).append(page_id)

    async def pop(self, stage: str) -> Optional[int]:
        queue = self._queues.get(stage)
        if not queue:
            return None
        return queue.popleft()

    async def size(self, stage: str) -> int:
        return len(self._queues.get(stage, ()))


class RedisStageQueue:
    """One Redis list per stage: crawl:stage:{stage}."""

    KEY_PREFIX = "crawl:stage:"

    def __init__(self, redis: Redis):
        self.redis = redis

    async def push(self, stage: str, page_id: int) -> None:
        await self.redis.rpush(f"{self.KEY_PREFIX}{stage}", str(page_id))

    async def pop(self, stage: str) -> Optional[int]:
        raw = await self.redis.lpop(f"{self.KEY_PREFIX}{stage}")
        if raw is None:
            return None
        return int(raw.decode() if isinstance(raw, bytes) else raw)

    async def size(self, stage: str) -> int:
        return await self.redis.llen(f"{self.KEY_PREFIX}{stage}")


# ── Dispatcher ─────────────────────────────────────────────────


class StageDispatcher:
    """Fans a ContentReady out to the stage queues."""

    def __init__(self, queue, screenshots_enabled: bool = False):
        self.queue = queue
        self.screenshots_enabled = screenshots_enabled

    def stages_for(self, event: ContentReady) -> List[str]:
        # JS-rendered content was already processed on the render path
        if event.was_rendered:
            return []
        stages = []
        if self.screenshots_enabled:
            stages.append("screenshot")
        stages.extend(["ai_analysis", "embedding"])
        return stages

    async def dispatch(self, event: ContentReady) -> List[str]:
        stages = self.stages_for(event)
        if not stages:
            logger.debug(f"Skipping page {event.page_id}: already JS-rendered")
            return []
        for stage in stages:
            await self.queue.push(stage, event.page_id)
        logger.info(f"Queued page {event.page_id} for {', '.join(stages)}")
        return stages

    async def drain_channel(self, channel: RedisChannel, max_items: int = 1000) -> int:
        """Move pending notifications from a Redis channel onto the stage queues."""
        moved = 0
        while moved < max_items:
            event = await channel.pop()
            if event is None:
                break
            await self.dispatch(event)
            moved += 1
        return moved
