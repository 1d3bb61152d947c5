"""
Relational schema for the crawl pipeline (SQLAlchemy 2.0 style).

Models:
- Domain: a crawl target root with subdomain policy and per-domain settings
- Page: one URL of a domain, unique by (domain_id, url_hash)
- PageLink: directed edge source page -> target page, unique by the pair
"""

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON, TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as timezone-aware UTC.

    SQLite drops tzinfo on read; naive values coming back are UTC by construction.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all crawl models."""

    pass


class Domain(Base):
    """
    Crawl target root.

    Attributes:
        domain: Main hostname (e.g. 'example.com'), unique
        allowed_subdomains: Subdomains allowed besides the bare domain; empty allows all
        crawl_settings: Per-domain overrides: protocol, request_delay_ms, page_budget, render_js
        is_active: Whether crawl runs pick this domain up
        last_crawled_at: End of the most recent crawl session
    """

    __tablename__ = "domains"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    allowed_subdomains: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    crawl_settings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    last_crawled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    def is_url_allowed(self, url: str) -> bool:
        """Check if a URL belongs to this domain (including allowed subdomains)."""
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return False

        if host != self.domain and not host.endswith("." + self.domain):
            return False

        if not self.allowed_subdomains:
            return True

        if host == self.domain:
            return True
        return any(host == f"{sub}.{self.domain}" for sub in self.allowed_subdomains)

    @property
    def settings(self) -> dict:
        return self.crawl_settings or {}

    @property
    def base_url(self) -> str:
        protocol = self.settings.get("protocol", "https")
        return f"{protocol}://{self.domain}"

    @property
    def root_url(self) -> str:
        return f"{self.base_url}/"

    @property
    def request_delay_ms(self) -> Optional[int]:
        value = self.settings.get("request_delay_ms")
        return int(value) if value is not None else None

    @property
    def page_budget(self) -> Optional[int]:
        value = self.settings.get("page_budget")
        return int(value) if value is not None else None

    @property
    def render_js(self) -> bool:
        return bool(self.settings.get("render_js", False))

    def __repr__(self) -> str:
        return f"<Domain(id={self.id}, domain='{self.domain}', active={self.is_active})>"


class Page(Base):
    """
    A crawled (or discovered) URL scoped to one Domain.

    last_crawled_at is None for frontier pages: discovered through a link but
    never fetched. The *_at stage columns are set by downstream stage workers.
    """

    __tablename__ = "pages"
    __table_args__ = (
        UniqueConstraint("domain_id", "url_hash", name="uq_pages_domain_url_hash"),
        Index("ix_pages_domain_last_crawled", "domain_id", "last_crawled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain_id: Mapped[int] = mapped_column(ForeignKey("domains.id", ondelete="CASCADE"), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    url_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_crawled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    inbound_links_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    raw_content_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    screenshot_taken_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    ai_analyzed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    embedding_generated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    attributes_extracted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def is_frontier(self) -> bool:
        return self.last_crawled_at is None

    def __repr__(self) -> str:
        return f"<Page(id={self.id}, url='{self.url}', depth={self.depth})>"


class PageLink(Base):
    """Directed link between two pages of the same domain."""

    __tablename__ = "page_links"
    __table_args__ = (
        UniqueConstraint("source_page_id", "target_page_id", name="uq_page_links_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_page_id: Mapped[int] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    target_page_id: Mapped[int] = mapped_column(
        ForeignKey("pages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    anchor_text: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<PageLink({self.source_page_id} -> {self.target_page_id})>"


def create_schema(engine) -> None:
    Base.metadata.create_all(engine)
