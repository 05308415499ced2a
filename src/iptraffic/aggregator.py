"""Process-lifetime counter table keyed by remote IP."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import replace

from iptraffic.models import TrafficDelta, TrafficStats


class TrafficAggregator:
    """Accumulates traffic deltas per remote IP.

    The backend reader thread is the only writer. Readers get consistent
    copies via snapshot(); the lock is never held while callers enrich the
    result.
    """

    def __init__(self) -> None:
        self._stats: dict[str, TrafficStats] = {}
        self._lock = threading.Lock()

    def apply(self, delta: TrafficDelta) -> None:
        """Merge one delta into the stats for its IP."""
        with self._lock:
            self._merge(delta)

    def apply_batch(self, deltas: Iterable[TrafficDelta]) -> int:
        """Merge a window's worth of deltas under a single lock acquisition."""
        count = 0
        with self._lock:
            for delta in deltas:
                self._merge(delta)
                count += 1
        return count

    def snapshot(self) -> dict[str, TrafficStats]:
        """Return a point-in-time copy of every entry."""
        with self._lock:
            return {ip: replace(stats) for ip, stats in self._stats.items()}

    def get(self, remote_ip: str) -> TrafficStats | None:
        with self._lock:
            stats = self._stats.get(remote_ip)
            return replace(stats) if stats is not None else None

    def _merge(self, delta: TrafficDelta) -> None:
        stats = self._stats.get(delta.remote_ip)
        if stats is None:
            stats = TrafficStats()
            self._stats[delta.remote_ip] = stats
        stats.add(delta)

    def __len__(self) -> int:
        with self._lock:
            return len(self._stats)
