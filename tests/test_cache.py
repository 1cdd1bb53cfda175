"""Tests for scmsrv.auth.cache.TokenStore."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor

from scmsrv.auth.cache import TokenStore


class TestTokenStore:
    def test_get_miss(self):
        store: TokenStore[str] = TokenStore(ttl=60)
        assert store.get("t1") is None

    def test_set_and_get(self):
        store: TokenStore[str] = TokenStore(ttl=60)
        store.set("t1", "secret")
        assert store.get("t1") == "secret"
        assert "t1" in store
        assert len(store) == 1

    def test_set_replaces(self):
        store: TokenStore[str] = TokenStore()
        store.set("t1", "a")
        store.set("t1", "b")
        assert store.get("t1") == "b"
        assert len(store) == 1

    def test_expired_entry_returns_none(self):
        store: TokenStore[str] = TokenStore(ttl=0)  # instant expiry
        store.set("t1", "secret")
        # monotonic clock won't give us exactly 0, so sleep a tiny bit
        time.sleep(0.01)
        assert store.get("t1") is None
        assert "t1" not in store

    def test_no_ttl_never_expires(self):
        store: TokenStore[str] = TokenStore(ttl=None)
        store.set("t1", "secret")
        with store._lock:
            value, _ = store._data["t1"]
            store._data["t1"] = (value, time.monotonic() - 10**6)
        assert store.get("t1") == "secret"

    def test_pop_consumes(self):
        store: TokenStore[str] = TokenStore(ttl=60)
        store.set("t1", "secret")
        assert store.pop("t1") == "secret"
        assert store.pop("t1") is None
        assert store.get("t1") is None

    def test_pop_expired_returns_none(self):
        store: TokenStore[str] = TokenStore(ttl=0)
        store.set("t1", "secret")
        time.sleep(0.01)
        assert store.pop("t1") is None

    def test_pop_is_single_use_across_threads(self):
        store: TokenStore[str] = TokenStore(ttl=60)
        store.set("t1", "secret")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.pop("t1"), range(32)))
        assert results.count("secret") == 1
        assert results.count(None) == 31

    def test_delete(self):
        store: TokenStore[str] = TokenStore()
        store.set("t1", "secret")
        assert store.delete("t1") is True
        assert store.delete("t1") is False

    def test_clear(self):
        store: TokenStore[str] = TokenStore()
        store.set("t1", "a")
        store.set("t2", "b")
        store.clear()
        assert len(store) == 0

    def test_eviction_of_expired_on_max_size(self):
        store: TokenStore[str] = TokenStore(ttl=60, max_size=2)
        store.set("t1", "a")
        store.set("t2", "b")
        # Manually expire the first two entries so eviction can reclaim them
        with store._lock:
            for k in list(store._data):
                val, _ = store._data[k]
                store._data[k] = (val, time.monotonic() - 120)
        store.set("t3", "c")
        assert store.get("t3") == "c"
        assert len(store) == 1

    def test_oldest_dropped_when_full(self):
        store: TokenStore[str] = TokenStore(max_size=2)
        store.set("t1", "a")
        store.set("t2", "b")
        store.set("t3", "c")
        assert store.get("t1") is None
        assert store.get("t2") == "b"
        assert store.get("t3") == "c"
