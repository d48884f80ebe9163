"""
Tests for marathon_memory.memory: save/load, TTL, list, search, stats.
"""

import pytest

from marathon_memory.errors import InvalidArgument
from marathon_memory.memory import MemoryStore


@pytest.fixture
def store(backend, clock):
    return MemoryStore(backend, clock=clock)


# ---------------------------------------------------------------------------
# save / load
# ---------------------------------------------------------------------------


class TestSaveLoad:
    def test_roundtrip_keeps_tags(self, store):
        store.save("k", "v", tags=["a", "b"], category="notes")
        rec = store.load("k")
        assert rec.value == "v"
        assert rec.tags == ["a", "b"]
        assert rec.category == "notes"

    def test_access_count_increments(self, store, clock):
        store.save("k", "v")
        first = store.load("k")
        clock.advance(5)
        second = store.load("k")
        assert first.access_count == 0
        assert second.access_count == 1
        assert store.peek("k").access_count == 2
        assert store.peek("k").accessed_at > first.accessed_at

    def test_georgian_key(self, store):
        key = "ბათუმის_მოგზაურობის_შენიშვნები_2026"
        store.save(key, "ზღვა", tags=["მოგზაურობა"])
        assert store.load(key).value == "ზღვა"
        assert store.delete(key) is True
        assert store.load(key) is None

    def test_load_missing(self, store):
        assert store.load("nope") is None

    def test_save_replaces_everything(self, store, clock):
        store.save("k", "v1", tags=["old"], category="c1")
        store.load("k")
        store.load("k")
        clock.advance(10)
        saved = store.save("k", "v2")
        rec = store.load("k")
        assert rec.value == "v2"
        assert rec.access_count == 0
        assert rec.tags == []
        assert rec.category is None
        assert rec.created_at == saved.created_at

    def test_duplicate_tags_collapse(self, store):
        store.save("k", "v", tags=["a", "a", "b"])
        assert store.load("k").tags == ["a", "b"]

    def test_save_returns_record(self, store, clock):
        rec = store.save("k", "v", ttl_seconds=60)
        assert rec.access_count == 0
        assert rec.ttl_expires_at > rec.created_at

    @pytest.mark.parametrize("key", ["", None, 3])
    def test_invalid_key(self, store, key):
        with pytest.raises(InvalidArgument):
            store.save(key, "v")

    def test_invalid_value(self, store):
        with pytest.raises(InvalidArgument):
            store.save("k", {"not": "a string"})

    @pytest.mark.parametrize("ttl", [0, -5, True, "60"])
    def test_invalid_ttl(self, store, ttl):
        with pytest.raises(InvalidArgument):
            store.save("k", "v", ttl_seconds=ttl)

    def test_invalid_tags(self, store):
        with pytest.raises(InvalidArgument):
            store.save("k", "v", tags="coast")

    def test_delete_is_idempotent(self, store):
        store.save("k", "v")
        assert store.delete("k") is True
        assert store.delete("k") is True
        assert store.load("k") is None


# ---------------------------------------------------------------------------
# TTL
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_expired_load_returns_none_and_purges(self, store, backend, clock):
        store.save("k", "v", ttl_seconds=30)
        clock.advance(31)
        assert store.load("k") is None
        assert backend.get("memories", "k") is None
        assert "k" not in [r.key for r in store.list().items]

    def test_not_yet_expired(self, store, clock):
        store.save("k", "v", ttl_seconds=30)
        clock.advance(29)
        assert store.load("k").value == "v"

    def test_list_deletes_expired(self, store, backend, clock):
        store.save("short", "v", ttl_seconds=1)
        store.save("long", "v")
        clock.advance(2)
        result = store.list()
        assert [r.key for r in result.items] == ["long"]
        assert backend.get("memories", "short") is None

    def test_search_skips_without_deleting(self, store, backend, clock):
        store.save("short", "needle", ttl_seconds=1)
        clock.advance(2)
        assert store.search("needle") == []
        assert backend.get("memories", "short") is not None

    def test_cleanup(self, store, backend, clock):
        store.save("a", "v", ttl_seconds=1)
        store.save("b", "v", ttl_seconds=1)
        store.save("c", "v", ttl_seconds=100)
        store.save("d", "v")
        clock.advance(5)
        assert store.cleanup() == 2
        assert store.cleanup() == 0
        assert backend.count("memories") == 2


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


class TestList:
    def test_tag_scenario(self, store):
        store.save("trip", "Batumi notes", tags=["georgia", "coast"])
        assert "trip" in [r.key for r in store.list(tags=["coast"]).items]
        assert "trip" not in [r.key for r in store.list(tags=["mountains"]).items]

    def test_tags_are_or_and_case_insensitive(self, store):
        store.save("a", "v", tags=["Coast"])
        store.save("b", "v", tags=["mountains"])
        store.save("c", "v", tags=["city"])
        keys = {r.key for r in store.list(tags=["coast", "MOUNTAINS"]).items}
        assert keys == {"a", "b"}

    def test_tags_match_exactly(self, store):
        store.save("a", "v", tags=["coastline"])
        assert store.list(tags=["coast"]).total == 0

    def test_category_filter(self, store):
        store.save("a", "v", category="travel")
        store.save("b", "v", category="work")
        store.save("c", "v")
        assert [r.key for r in store.list(category="travel").items] == ["a"]

    def test_default_order_newest_first(self, store, clock):
        for key in ("first", "second", "third"):
            store.save(key, "v")
            clock.advance(1)
        assert [r.key for r in store.list().items] == ["third", "second", "first"]

    def test_sort_by_key_asc(self, store):
        for key in ("b", "c", "a"):
            store.save(key, "v")
        result = store.list(sort_by="key", sort_order="asc")
        assert [r.key for r in result.items] == ["a", "b", "c"]

    def test_sort_by_access_count(self, store):
        store.save("cold", "v")
        store.save("hot", "v")
        for _ in range(3):
            store.load("hot")
        assert store.list(sort_by="access_count").items[0].key == "hot"

    def test_pagination_and_total(self, store, clock):
        for i in range(7):
            store.save(f"k{i}", "v")
            clock.advance(1)
        page = store.list(limit=3, offset=3)
        assert page.total == 7
        assert [r.key for r in page.items] == ["k3", "k2", "k1"]

    def test_list_does_not_count_access(self, store):
        store.save("k", "v")
        store.list()
        assert store.peek("k").access_count == 0

    @pytest.mark.parametrize("kwargs", [
        {"sort_by": "value"},
        {"sort_order": "up"},
        {"limit": -1},
        {"offset": -1},
    ])
    def test_invalid_arguments(self, store, kwargs):
        with pytest.raises(InvalidArgument):
            store.list(**kwargs)


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------


class TestSearch:
    def test_matches_key_and_value(self, store):
        store.save("batumi-trip", "beach")
        store.save("other", "Batumi boulevard")
        store.save("nothing", "here")
        assert {r.key for r in store.search("BATUMI")} == {"batumi-trip", "other"}

    def test_order_by_access_then_updated(self, store, clock):
        store.save("old", "x")
        clock.advance(1)
        store.save("new", "x")
        clock.advance(1)
        store.save("popular", "x")
        store.load("popular")
        assert [r.key for r in store.search("x")] == ["popular", "new", "old"]

    def test_limit_and_category(self, store):
        for i in range(5):
            store.save(f"t{i}", "x", category="a" if i % 2 else "b")
        assert len(store.search("x", limit=2)) == 2
        assert {r.key for r in store.search("x", category="a")} == {"t1", "t3"}

    def test_default_limit(self, store):
        for i in range(25):
            store.save(f"k{i:02d}", "x")
        assert len(store.search("x")) == 20


# ---------------------------------------------------------------------------
# stats
# ---------------------------------------------------------------------------


class TestStats:
    def test_stats(self, store, clock):
        store.save("a", "v", category="travel")
        store.save("b", "v", category="travel")
        store.save("c", "v")
        store.save("gone", "v", ttl_seconds=1)
        store.load("b")
        store.load("b")
        store.load("c")
        clock.advance(2)
        stats = store.stats()
        assert stats.total == 3
        assert stats.per_category == {"travel": 2, "uncategorized": 1}
        assert stats.top_accessed[0] == {"key": "b", "access_count": 2}
        assert stats.top_accessed[1] == {"key": "c", "access_count": 1}

    def test_top_accessed_capped(self, store):
        for i in range(15):
            store.save(f"k{i}", "v")
        assert len(store.stats().top_accessed) == 10

    def test_records_and_restore(self, store, backend):
        rec = store.save("k", "v")
        store.load("k")
        snapshot = store.peek("k")
        store.delete("k")
        store.restore(snapshot)
        assert store.peek("k").access_count == 1
        assert [r.key for r in store.records()] == ["k"]
        assert rec.created_at == store.peek("k").created_at
