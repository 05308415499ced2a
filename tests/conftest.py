"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from iptraffic.aggregator import TrafficAggregator
from iptraffic.backend.parser import TickWindow
from iptraffic.errors import BackendError
from iptraffic.models import TrafficDelta


class FakeBackend:
    """In-memory TrafficBackend that replays a fixed list of lines."""

    name = "fake"

    def __init__(
        self,
        lines: list[str] | None = None,
        start_error: str | None = None,
        stream_error: str | None = None,
        public_only: bool = True,
        hold: bool = False,
    ) -> None:
        self._lines = lines or []
        self._start_error = start_error
        self._stream_error = stream_error
        self._public_only = public_only
        self._hold = hold
        self._released = threading.Event()
        self.started = False
        self.stopped = False

    def check(self) -> None:
        pass

    def start(self) -> None:
        if self._start_error:
            raise BackendError(self._start_error)
        self.started = True

    def lines(self) -> Iterator[str]:
        yield from self._lines
        if self._hold:
            # Behave like a long-running process until stop()
            self._released.wait(timeout=10)
        if self._stream_error:
            raise BackendError(self._stream_error)

    def new_parser(self) -> TickWindow:
        return TickWindow(public_only=self._public_only)

    def stop(self) -> None:
        self.stopped = True
        self._released.set()


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def aggregator() -> TrafficAggregator:
    return TrafficAggregator()


@pytest.fixture
def seeded_aggregator() -> TrafficAggregator:
    agg = TrafficAggregator()
    agg.apply(TrafficDelta("93.184.216.34", tx_bytes=2_000_000, rx_bytes=3_000_000))
    agg.apply(TrafficDelta("1.1.1.1", tx_bytes=500_000, rx_bytes=100))
    return agg


@pytest.fixture
def make_backend() -> type[FakeBackend]:
    return FakeBackend
