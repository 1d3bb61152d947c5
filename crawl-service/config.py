"""
Crawl Service configuration
All settings come from environment variables with production defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///crawler.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
QDRANT_URL = os.getenv("QDRANT_URL", "http://localhost:6333")
QDRANT_API_KEY = os.getenv("QDRANT_API_KEY")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "BAAI/bge-base-en-v1.5")
CONTENT_STORE_PATH = os.getenv("CONTENT_STORE_PATH", "./storage/pages")


@dataclass(frozen=True)
class CrawlerSettings:
    """Crawler knobs. Defaults mirror the production crawl:update cron."""

    user_agent: str = "MarketKing Crawler/1.0"
    timeout: float = 30.0                  # seconds per request
    delay_ms: int = 100                    # politeness delay between requests
    max_response_size: int = 2 * 1024 * 1024
    respect_robots: bool = True
    parseable_mime_types: List[str] = field(default_factory=lambda: ["text/html", "text/plain"])

    # Recrawl priority: effective_age = hours_since_crawl + inbound_links * hours_per_link
    min_interval_minutes: int = 20
    max_interval_days: int = 20
    hours_per_link: int = 1

    max_pages_per_run: int = 100
    screenshots_enabled: bool = False

    @classmethod
    def from_env(cls) -> "CrawlerSettings":
        return cls(
            user_agent=os.getenv("CRAWLER_USER_AGENT", "MarketKing Crawler/1.0"),
            timeout=float(os.getenv("CRAWLER_TIMEOUT", "30")),
            delay_ms=int(os.getenv("CRAWLER_DELAY", "100")),
            max_response_size=int(os.getenv("CRAWLER_MAX_RESPONSE_SIZE", str(2 * 1024 * 1024))),
            respect_robots=_env_bool("CRAWLER_RESPECT_ROBOTS", "true"),
            parseable_mime_types=_env_list("CRAWLER_PARSEABLE_MIME_TYPES", "text/html,text/plain"),
            min_interval_minutes=int(os.getenv("CRAWLER_MIN_INTERVAL_MINUTES", "20")),
            max_interval_days=int(os.getenv("CRAWLER_MAX_INTERVAL_DAYS", "20")),
            hours_per_link=int(os.getenv("CRAWLER_HOURS_PER_LINK", "1")),
            max_pages_per_run=int(os.getenv("CRAWLER_MAX_PAGES_PER_RUN", "100")),
            screenshots_enabled=_env_bool("CRAWLER_SCREENSHOTS_ENABLED", "false"),
        )


def get_settings(overrides: Optional[dict] = None) -> CrawlerSettings:
    """Settings from the environment, optionally with field overrides."""
    settings = CrawlerSettings.from_env()
    if overrides:
        from dataclasses import replace
        settings = replace(settings, **overrides)
    return settings
