"""Tests for the httpx page fetcher."""

import httpx
import pytest

from config import CrawlerSettings
from fetcher import FetchError, HttpFetcher

ROBOTS = "User-agent: *\nDisallow: /private\n"


def _handler(routes):
    def handle(request: httpx.Request) -> httpx.Response:
        route = routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        if isinstance(route, Exception):
            raise route
        return route
    return handle


def _fetcher(routes, **settings):
    return HttpFetcher(CrawlerSettings(**settings), transport=httpx.MockTransport(_handler(routes)))


def _html(body="<html>ok</html>", status=200, content_type="text/html; charset=utf-8"):
    return httpx.Response(status, text=body, headers={"content-type": content_type})


class TestFetch:
    """Status, MIME type and size checks."""

    @pytest.mark.asyncio
    async def test_successful_fetch(self):
        async with _fetcher({"https://shop.example/a": _html("<p>hi</p>")}) as fetcher:
            result = await fetcher.fetch("https://shop.example/a")
        assert result.status_code == 200
        assert result.body == "<p>hi</p>"
        assert result.url == "https://shop.example/a"
        assert result.headers["content-type"].startswith("text/html")

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_fetch_error(self):
        async with _fetcher({"https://shop.example/a": _html(status=503)}) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/a")
        assert exc.value.status_code == 503
        assert "HTTP 503" in str(exc.value)

    @pytest.mark.asyncio
    async def test_missing_page_is_a_fetch_error(self):
        async with _fetcher({}) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/gone")
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_non_parseable_mime_type_is_rejected(self):
        routes = {"https://shop.example/logo.png": _html(body="png", content_type="image/png")}
        async with _fetcher(routes) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/logo.png")
        assert "image/png" in exc.value.reason

    @pytest.mark.asyncio
    async def test_oversized_body_is_rejected(self):
        routes = {"https://shop.example/big": _html(body="x" * 2048)}
        async with _fetcher(routes, max_response_size=1024) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/big")
        assert "too large" in exc.value.reason

    @pytest.mark.asyncio
    async def test_chunked_body_stops_reading_at_the_limit(self):
        sent = []

        async def chunks():
            for _ in range(100):
                sent.append(1)
                yield b"x" * 512

        routes = {
            "https://shop.example/endless": httpx.Response(
                200, headers={"content-type": "text/html"}, content=chunks()
            )
        }
        async with _fetcher(routes, max_response_size=1024) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/endless")

        assert "too large" in exc.value.reason
        assert len(sent) < 100

    @pytest.mark.asyncio
    async def test_network_failure_is_a_fetch_error(self):
        routes = {"https://shop.example/a": httpx.ConnectError("connection refused")}
        async with _fetcher(routes) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/a")
        assert exc.value.status_code is None

    @pytest.mark.asyncio
    async def test_timeout_is_a_fetch_error(self):
        routes = {"https://shop.example/a": httpx.ReadTimeout("too slow")}
        async with _fetcher(routes) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/a")
        assert exc.value.reason.startswith("Timeout")

    @pytest.mark.asyncio
    async def test_user_agent_header_is_sent(self):
        seen = {}

        def handle(request):
            seen["ua"] = request.headers["user-agent"]
            return _html()

        fetcher = HttpFetcher(
            CrawlerSettings(user_agent="TestBot/2.0", respect_robots=False),
            transport=httpx.MockTransport(handle),
        )
        async with fetcher:
            await fetcher.fetch("https://shop.example/")
        assert seen["ua"] == "TestBot/2.0"


class TestRobots:
    """robots.txt handling."""

    @pytest.mark.asyncio
    async def test_disallowed_path_is_blocked(self):
        routes = {
            "https://shop.example/robots.txt": httpx.Response(200, text=ROBOTS),
            "https://shop.example/private/x": _html(),
            "https://shop.example/public": _html(),
        }
        async with _fetcher(routes) as fetcher:
            with pytest.raises(FetchError) as exc:
                await fetcher.fetch("https://shop.example/private/x")
            assert "robots" in exc.value.reason
            assert (await fetcher.fetch("https://shop.example/public")).status_code == 200

    @pytest.mark.asyncio
    async def test_robots_can_be_ignored(self):
        routes = {
            "https://shop.example/robots.txt": httpx.Response(200, text=ROBOTS),
            "https://shop.example/private/x": _html(),
        }
        async with _fetcher(routes, respect_robots=False) as fetcher:
            assert (await fetcher.fetch("https://shop.example/private/x")).status_code == 200

    @pytest.mark.asyncio
    async def test_robots_is_fetched_once_per_origin(self):
        calls = []

        def handle(request):
            calls.append(str(request.url))
            if request.url.path == "/robots.txt":
                return httpx.Response(404)
            return _html()

        fetcher = HttpFetcher(CrawlerSettings(), transport=httpx.MockTransport(handle))
        async with fetcher:
            await fetcher.fetch("https://shop.example/a")
            await fetcher.fetch("https://shop.example/b")
        assert calls.count("https://shop.example/robots.txt") == 1

    @pytest.mark.asyncio
    async def test_unreachable_robots_allows_everything(self):
        routes = {
            "https://shop.example/robots.txt": httpx.ConnectError("nope"),
            "https://shop.example/a": _html(),
        }
        async with _fetcher(routes) as fetcher:
            assert (await fetcher.fetch("https://shop.example/a")).status_code == 200
