"""Tests for the SQLAlchemy page store."""

import pytest

from link_graph import stable_hash
from page_store import DomainNotFoundError


class TestDomains:
    """Domain registration and lookup."""

    def test_names_are_normalised(self, store):
        store.add_domain("  Shop.Example ")
        assert store.get_domain("SHOP.example").domain == "shop.example"

    def test_require_active_domain(self, store):
        store.add_domain("shop.example")
        store.add_domain("paused.example", is_active=False)

        assert store.require_active_domain("shop.example").domain == "shop.example"
        with pytest.raises(DomainNotFoundError) as exc:
            store.require_active_domain("paused.example")
        assert exc.value.reason == "inactive"
        with pytest.raises(DomainNotFoundError) as exc:
            store.require_active_domain("missing.example")
        assert exc.value.reason == "not found"

    def test_list_active_domains_in_registration_order(self, store):
        store.add_domain("b.example")
        store.add_domain("a.example")
        store.add_domain("off.example", is_active=False)
        assert [d.domain for d in store.list_active_domains()] == ["b.example", "a.example"]
        assert [d.domain for d in store.list_active_domains("a.example")] == ["a.example"]


class TestPages:
    """Atomic page writes."""

    def test_frontier_insert_is_idempotent(self, store, domain):
        url = "https://shop.example/a"
        first, created = store.insert_frontier_page(domain.id, url, stable_hash(url), 1)
        again, created_again = store.insert_frontier_page(domain.id, url, stable_hash(url), 3)

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert again.depth == 1
        assert store.count_frontier(domain.id) == 1

    def test_mark_stage_complete(self, store, domain, clock):
        url = "https://shop.example/a"
        page, _ = store.insert_frontier_page(domain.id, url, stable_hash(url), 1)

        store.mark_stage_complete(page.id, "embedding", clock())

        assert store.get_page(page.id).embedding_generated_at is not None
        with pytest.raises(ValueError):
            store.mark_stage_complete(page.id, "thumbnails")
