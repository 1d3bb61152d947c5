"""
Page fetching for the crawler.

HttpFetcher is the plain HTTP path: one GET per page through a shared
httpx.AsyncClient, robots.txt respected per origin. The Renderer protocol is
the contract for a headless-browser service that returns JS-rendered HTML.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import httpx

from config import CrawlerSettings

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    url: str
    status_code: int
    body: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class RenderResult:
    html: str
    screenshot: Optional[bytes] = None


class FetchError(Exception):
    """A page could not be fetched: network failure, timeout, non-2xx, or policy."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{reason}: {url}")


class Fetcher(Protocol):
    async def fetch(self, url: str) -> FetchResult: ...


class Renderer(Protocol):
    async def render(self, url: str) -> RenderResult: ...


class HttpFetcher:
    """httpx-based fetcher. Use as an async context manager or call aclose()."""

    def __init__(
        self,
        settings: Optional[CrawlerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or CrawlerSettings.from_env()
        self._robots_cache: Dict[str, RobotFileParser] = {}
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.timeout,
            headers={
                "User-Agent": self.settings.user_agent,
                "Accept": "text/html,application/xhtml+xml",
            },
            transport=transport,
        )

    async def __aenter__(self) -> "HttpFetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Robots.txt ─────────────────────────────────────────────────

    async def _get_robots(self, url: str) -> RobotFileParser:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"

        if origin in self._robots_cache:
            return self._robots_cache[origin]

        rp = RobotFileParser()
        try:
            resp = await self._client.get(f"{origin}/robots.txt", timeout=5.0)
            if resp.status_code == 200:
                rp.parse(resp.text.splitlines())
            else:
                rp.parse([])  # No robots.txt, allow all
        except httpx.HTTPError as e:
            logger.debug(f"robots.txt unavailable for {origin}: {e}")
            rp.parse([])

        self._robots_cache[origin] = rp
        return rp

    async def allowed_by_robots(self, url: str) -> bool:
        if not self.settings.respect_robots:
            return True
        robots = await self._get_robots(url)
        return robots.can_fetch(self.settings.user_agent, url)

    # ── Fetch ──────────────────────────────────────────────────────

    async def fetch(self, url: str) -> FetchResult:
        if not await self.allowed_by_robots(url):
            raise FetchError(url, "Blocked by robots.txt")

        try:
            async with self._client.stream("GET", url) as resp:
                if not 200 <= resp.status_code < 300:
                    raise FetchError(url, f"HTTP {resp.status_code}", status_code=resp.status_code)

                content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
                if content_type and content_type not in self.settings.parseable_mime_types:
                    raise FetchError(url, f"Non-parseable content type {content_type[:40]}", resp.status_code)

                body = await self._read_limited(url, resp)
                return FetchResult(
                    url=url,
                    status_code=resp.status_code,
                    body=body.decode(resp.charset_encoding or "utf-8", errors="replace"),
                    headers=dict(resp.headers),
                )
        except httpx.TimeoutException as e:
            raise FetchError(url, f"Timeout ({e.__class__.__name__})") from e
        except httpx.HTTPError as e:
            raise FetchError(url, f"Request failed ({str(e)[:80] or e.__class__.__name__})") from e

    async def _read_limited(self, url: str, resp: httpx.Response) -> bytes:
        """Read the body, giving up as soon as it exceeds max_response_size."""
        limit = self.settings.max_response_size
        declared = resp.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise FetchError(url, f"Response too large ({declared} bytes)", resp.status_code)

        body = bytearray()
        async for chunk in resp.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                raise FetchError(url, f"Response too large (over {limit} bytes)", resp.status_code)
        return bytes(body)
