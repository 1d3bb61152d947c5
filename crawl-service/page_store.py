"""
Relational storage for domains, pages and page links.

Every write that can race between concurrent crawlers is a single
INSERT ... ON CONFLICT statement keyed on the table's unique constraint.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import create_engine, event, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from models import Domain, Page, PageLink, create_schema, utcnow

logger = logging.getLogger(__name__)

STAGE_COLUMNS = {
    "screenshot": "screenshot_taken_at",
    "ai_analysis": "ai_analyzed_at",
    "embedding": "embedding_generated_at",
    "attributes": "attributes_extracted_at",
}


class DomainNotFoundError(LookupError):
    """Raised when a domain filter names an unknown or inactive domain."""

    def __init__(self, domain: str, reason: str = "not found"):
        self.domain = domain
        self.reason = reason
        super().__init__(f"Domain {domain}: {reason}")


def make_engine(database_url: str) -> Engine:
    """Create an engine; SQLite gets foreign keys switched on."""
    engine = create_engine(database_url, future=True)
    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_fk(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return engine


class SqlPageStore:
    """PageStore backed by SQLAlchemy (SQLite in tests, PostgreSQL in production)."""

    def __init__(self, engine: Engine, create_tables: bool = True):
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)
        if engine.dialect.name == "postgresql":
            self._insert = postgresql.insert
        elif engine.dialect.name == "sqlite":
            self._insert = sqlite.insert
        else:
            raise ValueError(f"Unsupported dialect for upserts: {engine.dialect.name}")
        if create_tables:
            create_schema(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlPageStore":
        return cls(make_engine(database_url))

    # ── Domains ────────────────────────────────────────────────────

    def add_domain(
        self,
        domain: str,
        allowed_subdomains: Optional[List[str]] = None,
        crawl_settings: Optional[dict] = None,
        is_active: bool = True,
    ) -> Domain:
        with self.Session.begin() as session:
            row = Domain(
                domain=domain.strip().lower(),
                allowed_subdomains=allowed_subdomains or None,
                crawl_settings=crawl_settings or None,
                is_active=is_active,
            )
            session.add(row)
        logger.info(f"Registered domain {row.domain} (active={is_active})")
        return row

    def get_domain(self, domain: str) -> Optional[Domain]:
        with self.Session() as session:
            return session.scalars(
                select(Domain).where(Domain.domain == domain.strip().lower())
            ).first()

    def require_active_domain(self, domain: str) -> Domain:
        row = self.get_domain(domain)
        if row is None:
            raise DomainNotFoundError(domain, "not found")
        if not row.is_active:
            raise DomainNotFoundError(domain, "inactive")
        return row

    def get_domain_by_id(self, domain_id: int) -> Optional[Domain]:
        with self.Session() as session:
            return session.get(Domain, domain_id)

    def list_active_domains(self, domain_filter: Optional[str] = None) -> List[Domain]:
        query = select(Domain).where(Domain.is_active.is_(True)).order_by(Domain.id)
        if domain_filter:
            query = query.where(Domain.domain == domain_filter.strip().lower())
        with self.Session() as session:
            return list(session.scalars(query))

    def touch_domain_crawled(self, domain_id: int, when: Optional[datetime] = None) -> None:
        when = when or utcnow()
        with self.Session.begin() as session:
            session.execute(
                update(Domain)
                .where(Domain.id == domain_id)
                .values(last_crawled_at=when, updated_at=utcnow())
            )

    # ── Pages ──────────────────────────────────────────────────────

    def count_pages(self, domain_id: int) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count()).select_from(Page).where(Page.domain_id == domain_id)
            )

    def count_frontier(self, domain_id: int) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count())
                .select_from(Page)
                .where(Page.domain_id == domain_id, Page.last_crawled_at.is_(None))
            )

    def get_page(self, page_id: int) -> Optional[Page]:
        with self.Session() as session:
            return session.get(Page, page_id)

    def find_page(self, domain_id: int, url_hash: str) -> Optional[Page]:
        with self.Session() as session:
            return session.scalars(
                select(Page).where(Page.domain_id == domain_id, Page.url_hash == url_hash)
            ).first()

    def list_pages(
        self,
        domain_id: int,
        new_only: bool = False,
        crawled_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Page]:
        """Pages of a domain in discovery order.

        new_only: only never-crawled pages.
        crawled_before: only pages last crawled at or before this instant.
        """
        query = select(Page).where(Page.domain_id == domain_id)
        if new_only:
            query = query.where(Page.last_crawled_at.is_(None))
        if crawled_before is not None:
            query = query.where(Page.last_crawled_at <= crawled_before)
        query = query.order_by(Page.created_at, Page.id)
        if limit is not None:
            query = query.limit(limit)
        with self.Session() as session:
            return list(session.scalars(query))

    def max_inbound_count(self, domain_id: int) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.coalesce(func.max(Page.inbound_links_count), 0))
                .where(Page.domain_id == domain_id)
            )

    def upsert_fetched_page(
        self,
        domain_id: int,
        url: str,
        url_hash: str,
        raw_content_ref: Optional[str],
        depth: int,
        crawled_at: datetime,
        overwrite_depth: bool = True,
    ) -> Page:
        """Insert-or-update a fetched page in one statement."""
        now = utcnow()
        stmt = self._insert(Page).values(
            domain_id=domain_id,
            url=url,
            url_hash=url_hash,
            raw_content_ref=raw_content_ref,
            depth=depth,
            last_crawled_at=crawled_at,
            inbound_links_count=0,
            created_at=now,
            updated_at=now,
        )
        changes = {
            "url": stmt.excluded.url,
            "raw_content_ref": stmt.excluded.raw_content_ref,
            "last_crawled_at": stmt.excluded.last_crawled_at,
            "updated_at": stmt.excluded.updated_at,
        }
        if overwrite_depth:
            changes["depth"] = stmt.excluded.depth
        stmt = stmt.on_conflict_do_update(
            index_elements=[Page.domain_id, Page.url_hash],
            set_=changes,
        )
        with self.Session.begin() as session:
            session.execute(stmt)
            return session.scalars(
                select(Page).where(Page.domain_id == domain_id, Page.url_hash == url_hash)
            ).one()

    def insert_frontier_page(
        self, domain_id: int, url: str, url_hash: str, depth: int
    ) -> Tuple[Page, bool]:
        """Create a never-crawled page unless one exists. Returns (page, created)."""
        now = utcnow()
        stmt = (
            self._insert(Page)
            .values(
                domain_id=domain_id,
                url=url,
                url_hash=url_hash,
                depth=depth,
                last_crawled_at=None,
                inbound_links_count=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[Page.domain_id, Page.url_hash])
        )
        with self.Session.begin() as session:
            result = session.execute(stmt)
            page = session.scalars(
                select(Page).where(Page.domain_id == domain_id, Page.url_hash == url_hash)
            ).one()
            return page, result.rowcount == 1

    def mark_stage_complete(self, page_id: int, stage: str, when: Optional[datetime] = None) -> None:
        column = STAGE_COLUMNS.get(stage)
        if column is None:
            raise ValueError(f"Unknown stage: {stage}")
        with self.Session.begin() as session:
            session.execute(
                update(Page).where(Page.id == page_id).values({column: when or utcnow()})
            )

    # ── Links ──────────────────────────────────────────────────────

    def upsert_link(self, source_id: int, target_id: int, anchor_text: Optional[str] = None) -> None:
        now = utcnow()
        stmt = self._insert(PageLink).values(
            source_page_id=source_id,
            target_page_id=target_id,
            anchor_text=anchor_text,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[PageLink.source_page_id, PageLink.target_page_id],
            set_={
                "anchor_text": stmt.excluded.anchor_text,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self.Session.begin() as session:
            session.execute(stmt)

    def list_links(self, source_id: Optional[int] = None) -> List[PageLink]:
        query = select(PageLink).order_by(PageLink.id)
        if source_id is not None:
            query = query.where(PageLink.source_page_id == source_id)
        with self.Session() as session:
            return list(session.scalars(query))

    def count_links(self, domain_id: Optional[int] = None) -> int:
        query = select(func.count()).select_from(PageLink)
        if domain_id is not None:
            query = query.join(Page, Page.id == PageLink.target_page_id).where(
                Page.domain_id == domain_id
            )
        with self.Session() as session:
            return session.scalar(query)

    def recompute_inbound_counts(self, domain_id: int) -> None:
        """Set every page's inbound_links_count from page_links in one statement."""
        inbound = (
            select(func.count())
            .select_from(PageLink)
            .where(PageLink.target_page_id == Page.id)
            .scalar_subquery()
        )
        with self.Session.begin() as session:
            session.execute(
                update(Page)
                .where(Page.domain_id == domain_id)
                .values(inbound_links_count=inbound)
                .execution_options(synchronize_session=False)
            )
