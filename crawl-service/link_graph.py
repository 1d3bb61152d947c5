"""
Link graph bookkeeping for crawled pages.

Turns one successful fetch into durable graph state: upsert the page, record
the edge that discovered it, extract outbound links, grow the frontier with
never-crawled pages, and recompute inbound-link counts once per session.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Set, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup
from sqlalchemy.exc import IntegrityError

from events import ContentReady
from models import Domain, Page, utcnow

logger = logging.getLogger(__name__)


def stable_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


@dataclass
class SessionCache:
    """URL hash -> (page id, depth) for pages touched in one crawl session.

    Created per domain session and dropped when the session ends, so nothing
    stale survives into the next run.
    """

    domain_id: int
    pages: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    def remember(self, page: Page) -> None:
        self.pages[page.url_hash] = (page.id, page.depth)

    def lookup(self, url_hash: str) -> Optional[Tuple[int, int]]:
        return self.pages.get(url_hash)

    def __len__(self) -> int:
        return len(self.pages)


class LinkGraphBookkeeper:
    def __init__(self, store, content_store, clock=utcnow):
        self.store = store
        self.content_store = content_store
        self._clock = clock

    # ── Page upsert ────────────────────────────────────────────────

    def _parent_depth(self, domain: Domain, found_on_url: str, cache: Optional[SessionCache]) -> Optional[int]:
        parent_hash = stable_hash(found_on_url)
        if cache is not None:
            hit = cache.lookup(parent_hash)
            if hit is not None:
                return hit[1]
        parent = self.store.find_page(domain.id, parent_hash)
        return parent.depth if parent else None

    def record_fetch(
        self,
        domain: Domain,
        url: str,
        raw_content: str,
        found_on_url: Optional[str] = None,
        cache: Optional[SessionCache] = None,
    ) -> Page:
        """Upsert a fetched page keyed by (domain, url hash).

        Depth is 0 for crawl roots and parent depth + 1 otherwise (1 when the
        parent is not persisted yet). A root-less recrawl of a known page keeps
        its stored depth.
        """
        url_hash = stable_hash(url)
        raw_ref = self.content_store.put(domain.domain, url_hash, raw_content)

        if found_on_url is None:
            depth, overwrite_depth = 0, False
        else:
            parent_depth = self._parent_depth(domain, found_on_url, cache)
            depth = parent_depth + 1 if parent_depth is not None else 1
            overwrite_depth = True

        page = self.store.upsert_fetched_page(
            domain_id=domain.id,
            url=url,
            url_hash=url_hash,
            raw_content_ref=raw_ref,
            depth=depth,
            crawled_at=self._clock(),
            overwrite_depth=overwrite_depth,
        )
        if cache is not None:
            cache.remember(page)
        return page

    # ── Edges ──────────────────────────────────────────────────────

    def record_edge(self, source_page: Page, target_page: Page, anchor_text: Optional[str] = None) -> None:
        """Upsert source -> target; the latest anchor text wins."""
        self._upsert_edge(source_page.id, target_page.id, anchor_text)

    def _upsert_edge(self, source_id: int, target_id: int, anchor_text: Optional[str] = None) -> None:
        if source_id == target_id:
            return
        try:
            self.store.upsert_link(source_id, target_id, anchor_text)
        except IntegrityError as e:
            # Concurrent discovery of the same edge, or a page removed under us
            logger.debug(f"Could not record link {source_id} -> {target_id}: {e}")

    # ── Link extraction ────────────────────────────────────────────

    @staticmethod
    def extract_outbound_links(raw_content: str, base_url: str) -> Set[str]:
        """Absolute http(s) URLs of every anchor on the page, fragments removed."""
        links: Set[str] = set()
        try:
            soup = BeautifulSoup(raw_content or "", "html.parser")
        except Exception as e:
            logger.warning(f"Failed to parse HTML from {base_url}: {e}")
            return links

        for a in soup.find_all("a", href=True):
            href = a["href"].strip()
            if not href or href.startswith(("#", "javascript:")):
                continue
            try:
                absolute, _fragment = urldefrag(urljoin(base_url, href))
                parsed = urlparse(absolute)
            except ValueError as e:
                logger.debug(f"Unresolvable href {href!r} on {base_url}: {e}")
                continue
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                continue
            links.add(absolute)

        return links

    # ── Frontier growth ────────────────────────────────────────────

    def ingest_discovered_links(
        self,
        links: Iterable[str],
        source_page: Page,
        domain: Domain,
        cache: Optional[SessionCache] = None,
    ) -> Dict[str, int]:
        """Link the source page to each allowed target, creating frontier pages as needed."""
        counts = {"existing": 0, "created": 0, "skipped": 0, "failed": 0}

        for link in sorted(links):
            try:
                if not domain.is_url_allowed(link):
                    counts["skipped"] += 1
                    continue

                link_hash = stable_hash(link)
                hit = cache.lookup(link_hash) if cache is not None else None
                created = False
                if hit is not None:
                    target_id = hit[0]
                else:
                    target = self.store.find_page(domain.id, link_hash)
                    if target is None:
                        target, created = self.store.insert_frontier_page(
                            domain.id, link, link_hash, source_page.depth + 1
                        )
                        if created:
                            logger.debug(f"Created frontier page {target.id} from {source_page.url}: {link}")
                    if cache is not None:
                        cache.remember(target)
                    target_id = target.id

                self._upsert_edge(source_page.id, target_id)
                counts["created" if created else "existing"] += 1
            except Exception as e:
                counts["failed"] += 1
                logger.warning(f"Failed to ingest link {link} from page {source_page.id}: {e}")

        return counts

    def recompute_inbound_counts(self, domain: Domain) -> None:
        self.store.recompute_inbound_counts(domain.id)

    # ── Composite: one crawled page ────────────────────────────────

    def handle_crawled(
        self,
        domain: Domain,
        url: str,
        raw_content: str,
        cache: Optional[SessionCache] = None,
        found_on_url: Optional[str] = None,
        anchor_text: Optional[str] = None,
        was_rendered: bool = False,
    ) -> ContentReady:
        page = self.record_fetch(domain, url, raw_content, found_on_url=found_on_url, cache=cache)

        if found_on_url is not None:
            parent = self.store.find_page(domain.id, stable_hash(found_on_url))
            if parent is not None:
                self.record_edge(parent, page, anchor_text)

        links = self.extract_outbound_links(raw_content, url)
        counts = self.ingest_discovered_links(links, page, domain, cache)

        logger.info(
            f"Page crawled: {url} (id={page.id}, depth={page.depth}, links={len(links)}, "
            f"internal={counts['existing'] + counts['created']}, new={counts['created']})"
        )

        return ContentReady(
            page_id=page.id,
            raw_content_ref=page.raw_content_ref,
            was_rendered=was_rendered,
            discovered_links=sorted(links),
        )
