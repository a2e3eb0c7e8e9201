"""Tests for ledger_agent.cache: keys and page caches."""

from __future__ import annotations

from pathlib import Path

from ledger_agent.cache import FilePageCache, LRUPageCache, cache_key


class TestCacheKey:
    def test_deterministic_and_order_independent(self) -> None:
        a = cache_key("user_data_retriever", 7, "Bill", params={"a": 1, "b": [1, 2]})
        b = cache_key("user_data_retriever", 7, "Bill", params={"b": [1, 2], "a": 1})
        assert a == b
        assert a.startswith("user_data_retriever_7_Bill_")

    def test_different_params_differ(self) -> None:
        assert cache_key("t", params={"q": "x"}) != cache_key("t", params={"q": "y"})

    def test_no_params(self) -> None:
        assert cache_key("schema_retriever", 7, "Bill") == "schema_retriever_7_Bill"

    def test_hash_length(self) -> None:
        key = cache_key("t", params={"q": 1}, hash_length=6)
        assert len(key.split("_")[-1]) == 6


class TestLRUPageCache:
    def test_set_get(self) -> None:
        cache = LRUPageCache()
        cache.set("k", [{"a": 1}])
        assert cache.get("k") == [{"a": 1}]
        assert cache.get("missing") is None

    def test_eviction(self) -> None:
        cache = LRUPageCache(maxsize=2)
        cache.set("a", [])
        cache.set("b", [])
        cache.get("a")
        cache.set("c", [])
        assert cache.get("b") is None
        assert cache.get("a") == []
        assert len(cache) == 2

    def test_ttl(self) -> None:
        cache = LRUPageCache(ttl=-1)
        cache.set("k", [{"a": 1}])
        assert cache.get("k") is None


class TestFilePageCache:
    def test_round_trip(self, tmp_path: Path) -> None:
        cache = FilePageCache(tmp_path / "cache")
        assert cache.get("user_data_retriever_7_Bill_abc") is None
        cache.set("user_data_retriever_7_Bill_abc", [{"QueryResponse": {}}])
        assert cache.get("user_data_retriever_7_Bill_abc") == [{"QueryResponse": {}}]

    def test_last_write_wins(self, tmp_path: Path) -> None:
        cache = FilePageCache(tmp_path)
        cache.set("k", [{"v": 1}])
        cache.set("k", [{"v": 2}])
        assert cache.get("k") == [{"v": 2}]
        assert not list(tmp_path.glob("*.tmp"))

    def test_malformed_entry_ignored(self, tmp_path: Path) -> None:
        (tmp_path / "k.json").write_text('{"not": "a list"}', encoding="utf-8")
        assert FilePageCache(tmp_path).get("k") is None
