"""Thread-safe read-through cache used by the enrichment lookups.

Entries are filled lazily on first access and, by default, kept for the
lifetime of the process. An optional ``max_entries`` bound turns the cache
into an LRU container without changing the call sites.

Concurrent misses for the same key are coalesced: only the first caller runs
the fill function, the others wait for its result.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class ReadThroughCache(Generic[K, V]):
    """Cache with fill-on-miss semantics and single-flight fills.

    Negative results (``None`` or any sentinel the fill function returns)
    are cached like any other value.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        if max_entries is not None and max_entries <= 0:
            max_entries = None
        self._max_entries = max_entries
        self._data: OrderedDict[K, V] = OrderedDict()
        self._inflight: dict[K, threading.Event] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def max_entries(self) -> int | None:
        return self._max_entries

    def get_or_fill(self, key: K, fill: Callable[[K], V]) -> V:
        """Return the cached value for ``key``, computing it with ``fill`` on a miss."""
        while True:
            with self._lock:
                value = self._data.get(key, _MISSING)
                if value is not _MISSING:
                    self._data.move_to_end(key)
                    self.hits += 1
                    return value  # type: ignore[return-value]

                pending = self._inflight.get(key)
                if pending is None:
                    pending = threading.Event()
                    self._inflight[key] = pending
                    self.misses += 1
                    break

            # Another thread is filling this key; wait and re-check
            pending.wait()

        try:
            value = fill(key)
        except BaseException:
            with self._lock:
                del self._inflight[key]
            pending.set()
            raise

        with self._lock:
            self._store(key, value)
            del self._inflight[key]
        pending.set()
        return value

    def peek(self, key: K, default: V | None = None) -> V | None:
        """Return a cached value without filling or touching LRU order."""
        with self._lock:
            value = self._data.get(key, _MISSING)
        return default if value is _MISSING else value  # type: ignore[return-value]

    def _store(self, key: K, value: V) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        if self._max_entries is not None:
            while len(self._data) > self._max_entries:
                self._data.popitem(last=False)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
