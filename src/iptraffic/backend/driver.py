"""Backend driver — owns the backend process and feeds the aggregator."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from iptraffic.aggregator import TrafficAggregator
from iptraffic.backend.base import TrafficBackend
from iptraffic.errors import BackendError
from iptraffic.models import BackendState, TrafficDelta, WindowSummary

logger = logging.getLogger(__name__)


class BackendDriver:
    """Runs a TrafficBackend on a dedicated reader thread.

    State machine: IDLE → STARTING → STREAMING → (STOPPING → STOPPED | FAILED).
    The running flag is checked between reads; since the read blocks,
    stopping takes effect on the next line or when the backend exits.
    """

    def __init__(
        self,
        backend: TrafficBackend,
        aggregator: TrafficAggregator,
        on_window: Callable[[WindowSummary], None] | None = None,
        join_timeout: float = 5.0,
    ) -> None:
        self._backend = backend
        self._aggregator = aggregator
        self._on_window = on_window
        self._join_timeout = join_timeout
        self._state = BackendState.IDLE
        self._state_lock = threading.Lock()
        self._running = threading.Event()
        self._thread: threading.Thread | None = None
        self._windows = 0
        self._last_error: str | None = None

    @property
    def backend(self) -> TrafficBackend:
        return self._backend

    @property
    def state(self) -> BackendState:
        with self._state_lock:
            return self._state

    @property
    def is_streaming(self) -> bool:
        return self.state == BackendState.STREAMING

    @property
    def windows_completed(self) -> int:
        return self._windows

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def start(self) -> bool:
        """Launch the backend and the reader thread. Returns False on failure."""
        with self._state_lock:
            if self._state != BackendState.IDLE:
                raise RuntimeError(f"driver already used (state: {self._state.value})")
            self._state = BackendState.STARTING

        try:
            self._backend.check()
            self._backend.start()
        except BackendError as exc:
            self._fail(str(exc))
            return False

        self._running.set()
        with self._state_lock:
            self._state = BackendState.STREAMING
        self._thread = threading.Thread(
            target=self._read_loop,
            name=f"{self._backend.name}-reader",
            daemon=True,
        )
        self._thread.start()
        logger.info("Streaming from %s backend", self._backend.name)
        return True

    def stop(self) -> None:
        """Signal the backend to terminate and join the reader thread."""
        with self._state_lock:
            if self._state == BackendState.STREAMING:
                self._state = BackendState.STOPPING
        self._running.clear()

        self._backend.stop()

        if self._thread is not None:
            self._thread.join(timeout=self._join_timeout)
            if self._thread.is_alive():
                logger.warning(
                    "Reader thread did not exit within %.1fs", self._join_timeout
                )

        with self._state_lock:
            if self._state == BackendState.STOPPING:
                self._state = BackendState.STOPPED

    def join(self, timeout: float | None = None) -> None:
        """Wait for the reader thread to finish (used when the stream is finite)."""
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _read_loop(self) -> None:
        parser = self._backend.new_parser()
        try:
            for line in self._backend.lines():
                if not self._running.is_set():
                    break
                deltas = parser.feed(line)
                if deltas is not None:
                    self._complete_window(deltas)
            else:
                pending = parser.flush()
                if pending:
                    self._complete_window(pending)
                if self._running.is_set():
                    raise BackendError(
                        f"{self._backend.name} output ended unexpectedly"
                    )
        except BackendError as exc:
            if self._running.is_set():
                self._fail(str(exc))
            else:
                logger.debug("Backend error after stop: %s", exc)
        except Exception as exc:
            # Never leave the state at STREAMING with a dead reader
            logger.exception("Reader thread crashed")
            self._fail(f"reader thread crashed: {exc}")

    def _complete_window(self, deltas: list[TrafficDelta]) -> None:
        self._aggregator.apply_batch(deltas)
        self._windows += 1
        logger.debug(
            "Window %d: %d address(es) from %s",
            self._windows,
            len(deltas),
            self._backend.name,
        )
        if self._on_window is not None:
            self._on_window(
                WindowSummary(
                    index=self._windows,
                    deltas=tuple(deltas),
                    finished_at=time.time(),
                )
            )

    def _fail(self, reason: str) -> None:
        self._last_error = reason
        with self._state_lock:
            self._state = BackendState.FAILED
        logger.error("Backend %s failed: %s", self._backend.name, reason)
