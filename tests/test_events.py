"""Tests for content-ready notifications, stage queues and the dispatcher."""

import pytest

from events import (
    ContentReady,
    DispatchingChannel,
    InMemoryStageQueue,
    RedisChannel,
    RedisStageQueue,
    StageDispatcher,
)


def _event(page_id=1, rendered=False):
    return ContentReady(
        page_id=page_id,
        raw_content_ref="shop.example/abc.html",
        was_rendered=rendered,
        discovered_links=["https://shop.example/a"],
    )


class TestContentReady:
    """Payload shape."""

    def test_json_payload_fields(self):
        event = ContentReady.from_json(_event(7).to_json().encode())
        assert event.page_id == 7
        assert event.raw_content_ref == "shop.example/abc.html"
        assert event.was_rendered is False
        assert event.discovered_links == ["https://shop.example/a"]


class TestStageDispatcher:
    """Routing notifications to stage queues."""

    @pytest.mark.asyncio
    async def test_plain_fetch_goes_to_analysis_and_embedding(self):
        queue = InMemoryStageQueue()
        stages = await StageDispatcher(queue).dispatch(_event(3))

        assert stages == ["ai_analysis", "embedding"]
        assert await queue.pop("ai_analysis") == 3
        assert await queue.pop("embedding") == 3
        assert await queue.size("screenshot") == 0

    @pytest.mark.asyncio
    async def test_screenshot_stage_when_enabled(self):
        queue = InMemoryStageQueue()
        stages = await StageDispatcher(queue, screenshots_enabled=True).dispatch(_event(3))
        assert stages == ["screenshot", "ai_analysis", "embedding"]

    @pytest.mark.asyncio
    async def test_rendered_content_is_not_requeued(self):
        queue = InMemoryStageQueue()
        assert await StageDispatcher(queue, screenshots_enabled=True).dispatch(_event(3, rendered=True)) == []
        assert await queue.size("embedding") == 0

    @pytest.mark.asyncio
    async def test_dispatching_channel(self):
        queue = InMemoryStageQueue()
        await DispatchingChannel(StageDispatcher(queue)).publish(_event(9))
        assert await queue.size("embedding") == 1


class TestRedisTransport:
    """Redis-backed channel and stage queues."""

    @pytest.mark.asyncio
    async def test_channel_is_fifo(self, fake_redis):
        channel = RedisChannel(fake_redis)
        await channel.publish(_event(1))
        await channel.publish(_event(2))

        assert (await channel.pop()).page_id == 1
        assert (await channel.pop()).page_id == 2
        assert await channel.pop() is None

    @pytest.mark.asyncio
    async def test_stage_queue_keys(self, fake_redis):
        queue = RedisStageQueue(fake_redis)
        await queue.push("embedding", 5)
        assert fake_redis.lists["crawl:stage:embedding"] == [b"5"]
        assert await queue.size("embedding") == 1
        assert await queue.pop("embedding") == 5
        assert await queue.pop("embedding") is None

    @pytest.mark.asyncio
    async def test_drain_channel_into_stage_queues(self, fake_redis):
        channel = RedisChannel(fake_redis)
        for page_id in (1, 2, 3):
            await channel.publish(_event(page_id, rendered=(page_id == 2)))

        queue = RedisStageQueue(fake_redis)
        moved = await StageDispatcher(queue).drain_channel(channel)

        assert moved == 3
        assert await queue.size("embedding") == 2
        assert await queue.size("ai_analysis") == 2
