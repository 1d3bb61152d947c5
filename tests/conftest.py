"""Shared fixtures: SQLite-backed store, on-disk content store, fake Redis and clocks."""

from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from content_store import LocalContentStore
from page_store import SqlPageStore


class FakeRedis:
    """In-process stand-in for the redis.asyncio calls the crawler makes."""

    def __init__(self):
        self.data = {}
        self.lists = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def get(self, key):
        self._check()
        value = self.data.get(key)
        return value.encode() if isinstance(value, str) else value

    async def set(self, key, value):
        self._check()
        self.data[key] = value
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    async def rpush(self, key, value):
        self._check()
        self.lists.setdefault(key, []).append(value.encode() if isinstance(value, str) else value)
        return len(self.lists[key])

    async def lpop(self, key):
        self._check()
        items = self.lists.get(key)
        if not items:
            return None
        return items.pop(0)

    async def llen(self, key):
        self._check()
        return len(self.lists.get(key, []))

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


class FakeClock:
    """Settable clock usable wherever a zero-argument time source is injected."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    return SqlPageStore.from_url(f"sqlite:///{tmp_path / 'crawl.db'}")


@pytest.fixture
def content_store(tmp_path):
    return LocalContentStore(tmp_path / "pages")


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def domain(store):
    return store.add_domain("shop.example", crawl_settings={"protocol": "https"})
