"""Unit tests for cache/store.py -- the shared TTL key/value store.

Covers:
- get/set round trip and overwrite
- expired entries are invisible to get() and exists()
- add() is insert-if-absent and succeeds again once the old entry expired
- pop() returns the value exactly once
- pop_if() only removes the value it was asked to remove
- set() falls back to an update when a concurrent insert wins
- purge_expired() removes only expired rows
"""

import time

import pytest

from cache.store import KeyValueCache


@pytest.fixture
def kv():
    store = KeyValueCache("sqlite:///:memory:")
    yield store
    store.close()


class TestGetSet:
    def test_missing_key_returns_none(self, kv: KeyValueCache) -> None:
        assert kv.get("nope") is None
        assert kv.exists("nope") is False

    def test_set_then_get(self, kv: KeyValueCache) -> None:
        kv.set("k", "v1", ttl=60)
        assert kv.get("k") == "v1"

    def test_set_overwrites(self, kv: KeyValueCache) -> None:
        kv.set("k", "v1", ttl=60)
        kv.set("k", "v2", ttl=60)
        assert kv.get("k") == "v2"

    def test_set_survives_concurrent_insert(self, kv: KeyValueCache, monkeypatch) -> None:
        real_update = kv._update_entry
        calls = []

        def racing_update(key: str, value: str, expires_at: float) -> int:
            calls.append(value)
            if len(calls) == 1:
                # Another writer creates the row after our update missed it.
                kv.add(key, "other", ttl=60)
                return 0
            return real_update(key, value, expires_at)

        monkeypatch.setattr(kv, "_update_entry", racing_update)
        kv.set("k", "mine", ttl=60)
        assert calls == ["mine", "mine"]
        assert kv.get("k") == "mine"

    def test_expired_entry_is_invisible(self, kv: KeyValueCache, monkeypatch) -> None:
        kv.set("k", "v", ttl=10)
        real_time = time.time()
        monkeypatch.setattr("cache.store.time.time", lambda: real_time + 11)
        assert kv.get("k") is None
        assert kv.exists("k") is False


class TestAdd:
    def test_add_only_once(self, kv: KeyValueCache) -> None:
        assert kv.add("blacklist:abc", "1", ttl=60) is True
        assert kv.add("blacklist:abc", "1", ttl=60) is False
        assert kv.get("blacklist:abc") == "1"

    def test_add_succeeds_after_expiry(self, kv: KeyValueCache, monkeypatch) -> None:
        assert kv.add("k", "old", ttl=5) is True
        real_time = time.time()
        monkeypatch.setattr("cache.store.time.time", lambda: real_time + 6)
        assert kv.add("k", "new", ttl=5) is True
        assert kv.get("k") == "new"


class TestPop:
    def test_pop_returns_value_once(self, kv: KeyValueCache) -> None:
        kv.set("code", "123456", ttl=60)
        assert kv.pop("code") == "123456"
        assert kv.pop("code") is None
        assert kv.get("code") is None

    def test_pop_missing_key(self, kv: KeyValueCache) -> None:
        assert kv.pop("missing") is None

    def test_pop_expired_returns_none(self, kv: KeyValueCache, monkeypatch) -> None:
        kv.set("code", "123456", ttl=5)
        real_time = time.time()
        monkeypatch.setattr("cache.store.time.time", lambda: real_time + 6)
        assert kv.pop("code") is None


class TestPopIf:
    def test_removes_matching_value(self, kv: KeyValueCache) -> None:
        kv.set("code", "hash-1", ttl=60)
        assert kv.pop_if("code", "hash-1") is True
        assert kv.get("code") is None
        assert kv.pop_if("code", "hash-1") is False

    def test_keeps_newer_value(self, kv: KeyValueCache) -> None:
        kv.set("code", "hash-1", ttl=60)
        kv.set("code", "hash-2", ttl=60)
        assert kv.pop_if("code", "hash-1") is False
        assert kv.get("code") == "hash-2"

    def test_expired_entry_not_removed(self, kv: KeyValueCache, monkeypatch) -> None:
        kv.set("code", "hash-1", ttl=5)
        real_time = time.time()
        monkeypatch.setattr("cache.store.time.time", lambda: real_time + 6)
        assert kv.pop_if("code", "hash-1") is False


class TestPurge:
    def test_purge_removes_only_expired(self, kv: KeyValueCache, monkeypatch) -> None:
        kv.set("short", "a", ttl=5)
        kv.set("long", "b", ttl=500)
        real_time = time.time()
        monkeypatch.setattr("cache.store.time.time", lambda: real_time + 10)
        assert kv.purge_expired() == 1
        assert kv.get("long") == "b"

    def test_delete(self, kv: KeyValueCache) -> None:
        kv.set("k", "v", ttl=60)
        kv.delete("k")
        assert kv.get("k") is None
