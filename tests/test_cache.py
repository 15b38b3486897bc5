"""Tests for the bounded FIFO completion cache."""

from __future__ import annotations

import pytest

from sidekick.completion.cache import CompletionCache, fingerprint

# ─── fingerprint ────────────────────────────────────────────────────────────


class TestFingerprint:
    def test_short_text_is_its_own_key(self):
        assert fingerprint("const x = ", 200) == "const x = "

    def test_long_text_keeps_trailing_slice(self):
        text = "a" * 300 + "tail"
        key = fingerprint(text, 200)
        assert len(key) == 200
        assert key.endswith("tail")

    def test_same_tail_collides(self):
        tail = "x" * 200
        assert fingerprint("file one\n" + tail) == fingerprint("other file\n" + tail)


# ─── CompletionCache ────────────────────────────────────────────────────────


class TestCompletionCache:
    def test_get_missing_returns_none(self):
        assert CompletionCache().get("nope") is None

    def test_put_then_get(self):
        cache = CompletionCache()
        cache.put("k", "v")
        assert cache.get("k") == "v"
        assert "k" in cache

    def test_capacity_never_exceeded(self):
        cache = CompletionCache(capacity=100)
        for i in range(250):
            cache.put(f"k{i}", str(i))
            assert len(cache) <= 100
        assert len(cache) == 100

    def test_survivors_are_last_n_in_insertion_order(self):
        cache = CompletionCache(capacity=100)
        for i in range(137):
            cache.put(f"k{i}", str(i))
        assert cache.keys() == [f"k{i}" for i in range(37, 137)]

    def test_101st_insert_evicts_exactly_the_oldest(self):
        cache = CompletionCache(capacity=100)
        for i in range(100):
            cache.put(f"k{i}", str(i))
        cache.put("new", "v")
        assert "k0" not in cache
        assert "k1" in cache
        assert "new" in cache

    def test_reads_do_not_affect_eviction(self):
        cache = CompletionCache(capacity=3)
        cache.put("a", "1")
        cache.put("b", "2")
        cache.put("c", "3")
        for _ in range(10):
            cache.get("a")
        cache.put("d", "4")
        assert "a" not in cache
        assert cache.keys() == ["b", "c", "d"]

    def test_reput_existing_key_keeps_position(self):
        cache = CompletionCache(capacity=3)
        cache.put("a", "1")
        cache.put("b", "2")
        cache.put("a", "updated")
        cache.put("c", "3")
        assert len(cache) == 3
        assert cache.get("a") == "updated"
        cache.put("d", "4")
        assert "a" not in cache

    def test_clear(self):
        cache = CompletionCache()
        cache.put("a", "1")
        cache.clear()
        assert len(cache) == 0
        assert cache.get("a") is None

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            CompletionCache(capacity=0)
