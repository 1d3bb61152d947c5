"""Tests for link graph bookkeeping: page upserts, edges, extraction and frontier growth."""

import logging

from sqlalchemy.exc import IntegrityError

from link_graph import LinkGraphBookkeeper, SessionCache, stable_hash


def _bookkeeper(store, content_store, clock):
    return LinkGraphBookkeeper(store, content_store, clock=clock)


class TestRecordFetch:
    """Upserting fetched pages."""

    def test_root_fetch_has_depth_zero(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        page = bk.record_fetch(domain, "https://shop.example/", "<html></html>")

        assert page.depth == 0
        assert page.url_hash == stable_hash("https://shop.example/")
        assert page.last_crawled_at == clock.now
        assert content_store.get(page.raw_content_ref) == "<html></html>"

    def test_second_fetch_updates_in_place(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        first = bk.record_fetch(domain, "https://shop.example/a", "v1")
        clock.advance(hours=3)
        second = bk.record_fetch(domain, "https://shop.example/a", "v2")

        assert second.id == first.id
        assert store.count_pages(domain.id) == 1
        assert second.last_crawled_at == clock.now
        assert content_store.get(second.raw_content_ref) == "v2"

    def test_depth_follows_parent(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        bk.record_fetch(domain, "https://shop.example/", "root")
        child = bk.record_fetch(domain, "https://shop.example/c", "c", found_on_url="https://shop.example/")
        grandchild = bk.record_fetch(domain, "https://shop.example/g", "g", found_on_url="https://shop.example/c")

        assert child.depth == 1
        assert grandchild.depth == 2

    def test_unknown_parent_defaults_to_depth_one(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        page = bk.record_fetch(domain, "https://shop.example/x", "x", found_on_url="https://shop.example/missing")
        assert page.depth == 1

    def test_rootless_recrawl_keeps_stored_depth(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        bk.record_fetch(domain, "https://shop.example/", "root")
        bk.record_fetch(domain, "https://shop.example/p", "p", found_on_url="https://shop.example/")

        again = bk.record_fetch(domain, "https://shop.example/p", "p2")
        assert again.depth == 1

    def test_parent_depth_comes_from_session_cache(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        cache = SessionCache(domain_id=domain.id)
        bk.record_fetch(domain, "https://shop.example/", "root", cache=cache)
        bk.record_fetch(domain, "https://shop.example/a", "a", found_on_url="https://shop.example/", cache=cache)

        assert len(cache) == 2
        assert cache.lookup(stable_hash("https://shop.example/a"))[1] == 1


class TestRecordEdge:
    """Edge upserts."""

    def test_one_row_per_pair_and_latest_anchor_wins(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        a = bk.record_fetch(domain, "https://shop.example/a", "a")
        b = bk.record_fetch(domain, "https://shop.example/b", "b")

        bk.record_edge(a, b, "first")
        bk.record_edge(a, b, "second")
        bk.record_edge(a, b, "third")

        links = store.list_links(a.id)
        assert len(links) == 1
        assert links[0].target_page_id == b.id
        assert links[0].anchor_text == "third"

    def test_self_links_are_ignored(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        a = bk.record_fetch(domain, "https://shop.example/a", "a")
        bk.record_edge(a, a, "me")
        assert store.count_links() == 0

    def test_concurrent_edge_insert_is_tolerated(self, store, content_store, clock, domain, monkeypatch, caplog):
        bk = _bookkeeper(store, content_store, clock)
        a = bk.record_fetch(domain, "https://shop.example/a", "a")
        b = bk.record_fetch(domain, "https://shop.example/b", "b")

        def racing(source_id, target_id, anchor_text=None):
            raise IntegrityError("INSERT INTO page_links", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(store, "upsert_link", racing)
        with caplog.at_level(logging.DEBUG, logger="link_graph"):
            bk.record_edge(a, b, "sale")
            counts = bk.ingest_discovered_links(["https://shop.example/b"], a, domain)

        assert counts == {"existing": 1, "created": 0, "skipped": 0, "failed": 0}
        race_records = [r for r in caplog.records if "Could not record link" in r.getMessage()]
        assert len(race_records) == 2
        assert all(r.levelno == logging.DEBUG for r in race_records)


class TestExtractOutboundLinks:
    """Pure link extraction."""

    BASE = "https://shop.example/catalog/shoes"

    def test_resolves_relative_protocol_relative_and_absolute(self):
        html = """
            <a href="boots">relative</a>
            <a href="/sale">root-relative</a>
            <a href="//cdn.shop.example/img">protocol-relative</a>
            <a href="https://other.example/page">absolute</a>
        """
        links = LinkGraphBookkeeper.extract_outbound_links(html, self.BASE)
        assert links == {
            "https://shop.example/catalog/boots",
            "https://shop.example/sale",
            "https://cdn.shop.example/img",
            "https://other.example/page",
        }

    def test_skips_fragment_only_javascript_and_non_http(self):
        html = """
            <a href="#top">top</a>
            <a href="javascript:void(0)">js</a>
            <a href="mailto:sales@shop.example">mail</a>
            <a href="">empty</a>
            <a>no href</a>
        """
        assert LinkGraphBookkeeper.extract_outbound_links(html, self.BASE) == set()

    def test_strips_fragments_and_deduplicates(self):
        html = '<a href="/p">one</a><a href="/p#reviews">two</a><a href="https://shop.example/p">three</a>'
        assert LinkGraphBookkeeper.extract_outbound_links(html, self.BASE) == {"https://shop.example/p"}

    def test_keeps_query_strings(self):
        html = '<a href="/search?q=boots&page=2">next</a>'
        assert LinkGraphBookkeeper.extract_outbound_links(html, self.BASE) == {
            "https://shop.example/search?q=boots&page=2"
        }

    def test_empty_content(self):
        assert LinkGraphBookkeeper.extract_outbound_links("", self.BASE) == set()


class TestSubdomainPolicy:
    """Domain.is_url_allowed."""

    def test_empty_allow_list_admits_every_subdomain(self, domain):
        assert domain.is_url_allowed("https://shop.example/a")
        assert domain.is_url_allowed("https://blog.shop.example/a")
        assert not domain.is_url_allowed("https://other.example/a")
        assert not domain.is_url_allowed("https://notshop.example/a")

    def test_allow_list_restricts_subdomains(self, store):
        d = store.add_domain("store.example", allowed_subdomains=["www"])
        assert d.is_url_allowed("https://store.example/")
        assert d.is_url_allowed("https://WWW.store.example/x")
        assert not d.is_url_allowed("https://blog.store.example/x")


class TestIngestDiscoveredLinks:
    """Frontier growth from a fetched page."""

    def test_creates_frontier_pages_one_level_deeper(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        root = bk.record_fetch(domain, "https://shop.example/", "root")
        counts = bk.ingest_discovered_links(
            ["https://shop.example/a", "https://shop.example/b", "https://elsewhere.example/"],
            root,
            domain,
        )

        assert counts == {"existing": 0, "created": 2, "skipped": 1, "failed": 0}
        frontier = store.list_pages(domain.id, new_only=True)
        assert {p.url for p in frontier} == {"https://shop.example/a", "https://shop.example/b"}
        assert all(p.depth == root.depth + 1 for p in frontier)
        assert all(p.last_crawled_at is None for p in frontier)
        assert store.count_links(domain.id) == 2

    def test_existing_target_only_gets_an_edge(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        root = bk.record_fetch(domain, "https://shop.example/", "root")
        other = bk.record_fetch(domain, "https://shop.example/known", "known")

        counts = bk.ingest_discovered_links(["https://shop.example/known"], root, domain)

        assert counts["existing"] == 1
        assert counts["created"] == 0
        assert store.count_pages(domain.id) == 2
        assert store.get_page(other.id).last_crawled_at == clock.now
        assert [l.target_page_id for l in store.list_links(root.id)] == [other.id]

    def test_one_bad_link_does_not_stop_the_rest(self, store, content_store, clock, domain, monkeypatch):
        bk = _bookkeeper(store, content_store, clock)
        root = bk.record_fetch(domain, "https://shop.example/", "root")
        real_insert = store.insert_frontier_page

        def flaky_insert(domain_id, url, url_hash, depth):
            if url.endswith("/broken"):
                raise RuntimeError("boom")
            return real_insert(domain_id, url, url_hash, depth)

        monkeypatch.setattr(store, "insert_frontier_page", flaky_insert)
        counts = bk.ingest_discovered_links(
            ["https://shop.example/broken", "https://shop.example/fine"], root, domain
        )

        assert counts["failed"] == 1
        assert counts["created"] == 1
        assert store.find_page(domain.id, stable_hash("https://shop.example/fine")) is not None


class TestInboundCounts:
    """Batch inbound-link recomputation."""

    def test_counts_match_edges_and_are_idempotent(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        a = bk.record_fetch(domain, "https://shop.example/a", "a")
        b = bk.record_fetch(domain, "https://shop.example/b", "b")
        hub = bk.record_fetch(domain, "https://shop.example/hub", "hub")
        bk.record_edge(a, hub)
        bk.record_edge(b, hub)
        bk.record_edge(hub, a)

        bk.recompute_inbound_counts(domain)
        bk.recompute_inbound_counts(domain)

        assert store.get_page(hub.id).inbound_links_count == 2
        assert store.get_page(a.id).inbound_links_count == 1
        assert store.get_page(b.id).inbound_links_count == 0


class TestHandleCrawled:
    """The composite per-page flow."""

    def test_returns_content_ready_and_links_parent(self, store, content_store, clock, domain):
        bk = _bookkeeper(store, content_store, clock)
        bk.record_fetch(domain, "https://shop.example/", "root")
        html = '<a href="/x">x</a><a href="https://elsewhere.example/">out</a>'

        event = bk.handle_crawled(
            domain, "https://shop.example/p", html,
            found_on_url="https://shop.example/", anchor_text="Products",
        )

        page = store.get_page(event.page_id)
        assert page.depth == 1
        assert event.raw_content_ref == page.raw_content_ref
        assert event.was_rendered is False
        assert event.discovered_links == ["https://elsewhere.example/", "https://shop.example/x"]

        parent = store.find_page(domain.id, stable_hash("https://shop.example/"))
        incoming = store.list_links(parent.id)
        assert [(l.target_page_id, l.anchor_text) for l in incoming] == [(page.id, "Products")]
        assert store.find_page(domain.id, stable_hash("https://shop.example/x")).depth == 2
