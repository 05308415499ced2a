"""Tests for the read-through cache."""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from iptraffic.cache import ReadThroughCache


def test_fill_called_once_per_key():
    cache: ReadThroughCache[str, int] = ReadThroughCache()
    fill = MagicMock(return_value=42)

    assert cache.get_or_fill("a", fill) == 42
    assert cache.get_or_fill("a", fill) == 42
    fill.assert_called_once_with("a")
    assert cache.hits == 1
    assert cache.misses == 1


def test_none_is_cached():
    cache: ReadThroughCache[str, int | None] = ReadThroughCache()
    fill = MagicMock(return_value=None)

    assert cache.get_or_fill("a", fill) is None
    assert cache.get_or_fill("a", fill) is None
    fill.assert_called_once()
    assert "a" in cache


def test_fill_error_is_not_cached():
    cache: ReadThroughCache[str, int] = ReadThroughCache()
    fill = MagicMock(side_effect=[RuntimeError("boom"), 7])

    with pytest.raises(RuntimeError):
        cache.get_or_fill("a", fill)
    assert "a" not in cache
    assert cache.get_or_fill("a", fill) == 7


def test_unbounded_by_default():
    cache: ReadThroughCache[int, int] = ReadThroughCache()
    for i in range(1000):
        cache.get_or_fill(i, lambda k: k)
    assert len(cache) == 1000
    assert cache.max_entries is None


def test_zero_bound_means_unbounded():
    assert ReadThroughCache(max_entries=0).max_entries is None


def test_bounded_evicts_least_recently_used():
    cache: ReadThroughCache[str, str] = ReadThroughCache(max_entries=2)
    cache.get_or_fill("a", str.upper)
    cache.get_or_fill("b", str.upper)
    cache.get_or_fill("a", str.upper)  # touch a
    cache.get_or_fill("c", str.upper)  # evicts b

    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache
    assert len(cache) == 2


def test_peek_does_not_fill():
    cache: ReadThroughCache[str, int] = ReadThroughCache()
    assert cache.peek("a") is None
    assert cache.peek("a", default=-1) == -1
    assert "a" not in cache


def test_concurrent_misses_fill_once():
    cache: ReadThroughCache[str, int] = ReadThroughCache()
    calls = 0
    calls_lock = threading.Lock()
    barrier = threading.Barrier(8)
    results: list[int] = []

    def slow_fill(key: str) -> int:
        nonlocal calls
        with calls_lock:
            calls += 1
        time.sleep(0.05)
        return 99

    def worker() -> None:
        barrier.wait()
        results.append(cache.get_or_fill("k", slow_fill))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert calls == 1
    assert results == [99] * 8
