"""Exporter runtime — wires the pipeline together and owns its lifetime."""

from __future__ import annotations

import logging
import queue
import threading
import time

from iptraffic.aggregator import TrafficAggregator
from iptraffic.backend.base import TrafficBackend
from iptraffic.backend.bpftrace import BpftraceBackend
from iptraffic.backend.driver import BackendDriver
from iptraffic.backend.iftop import IftopBackend
from iptraffic.cache import ReadThroughCache
from iptraffic.config import ExporterConfig
from iptraffic.errors import ConfigError
from iptraffic.geo import GeoEnrichmentCache
from iptraffic.metrics import MetricsRenderer
from iptraffic.models import BackendState, WindowSummary
from iptraffic.proc.conntable import ConnectionTableResolver
from iptraffic.proc.identity import ProcessIdentityCache
from iptraffic.reporter import ConsoleReporter
from iptraffic.web.app import MetricsServer, create_app

logger = logging.getLogger(__name__)


def build_backend(config: ExporterConfig) -> TrafficBackend:
    """Instantiate the backend selected by ``config.backend``."""
    if config.backend == "iftop":
        if not config.interface:
            raise ConfigError("the iftop backend requires a network interface")
        return IftopBackend(config.interface, config.sample_interval)
    if config.backend == "bpftrace":
        return BpftraceBackend(
            config.sample_interval,
            script_path=config.bpftrace_script,
            public_only=config.public_only,
        )
    raise ConfigError(f"unsupported backend: {config.backend}")


class ExporterRuntime:
    """Owns every component for one run of the exporter.

    The reader thread hands completed windows to a queue; the main thread
    drains it into the console reporter until the duration expires or
    stop() is called.
    """

    def __init__(
        self,
        config: ExporterConfig,
        backend: TrafficBackend | None = None,
        geo: GeoEnrichmentCache | None = None,
        reporter: ConsoleReporter | None = None,
    ) -> None:
        self.config = config
        max_entries = config.cache_max_entries or None

        # Fatal configuration errors surface here, before any thread starts
        self.geo = geo if geo is not None else GeoEnrichmentCache.open(
            config.geoip_db,
            config.isp_db,
            locales=config.geo_locales,
            max_entries=max_entries,
        )
        self.aggregator = TrafficAggregator()
        self.resolver = ConnectionTableResolver(freshness=config.conntable_freshness)
        self.identity = ProcessIdentityCache(
            self.resolver, cache=ReadThroughCache(max_entries)
        )
        self.renderer = MetricsRenderer(
            self.aggregator, self.geo, self.identity, config.export_threshold
        )
        self.reporter = reporter or ConsoleReporter(self.aggregator, self.identity)

        self._windows: queue.Queue[WindowSummary] = queue.Queue()
        self.driver = BackendDriver(
            backend if backend is not None else build_backend(config),
            self.aggregator,
            on_window=self._windows.put,
        )
        self.server: MetricsServer | None = None
        if config.metrics_port is not None:
            self.server = MetricsServer(
                create_app(self.renderer), config.metrics_host, config.metrics_port
            )
        self._stop_event = threading.Event()

    def stop(self) -> None:
        """Ask the main loop to exit (safe to call from a signal handler)."""
        self._stop_event.set()

    def run(self) -> int:
        """Run until the duration expires, stop() is called, or the backend dies.

        Returns 0 on a clean run and 1 if the backend failed.
        """
        if self.server is not None:
            self.server.start()

        self.driver.start()
        deadline = (
            None
            if self.config.is_unbounded
            else time.monotonic() + self.config.duration
        )

        try:
            self._loop(deadline)
        finally:
            self.shutdown()

        return 1 if self.driver.state == BackendState.FAILED else 0

    def _loop(self, deadline: float | None) -> None:
        failure_logged = False
        while not self._stop_event.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                logger.info("Monitoring duration elapsed")
                break

            timeout = self.config.sample_interval
            if deadline is not None:
                timeout = max(0.0, min(timeout, deadline - time.monotonic()))
            try:
                summary = self._windows.get(timeout=timeout)
            except queue.Empty:
                pass
            else:
                self.reporter.report(summary)

            if self.driver.state == BackendState.FAILED:
                if self.server is None:
                    # Nothing left to serve
                    break
                if not failure_logged:
                    logger.error(
                        "Backend failed (%s); metrics endpoint keeps serving "
                        "already aggregated data",
                        self.driver.last_error,
                    )
                    failure_logged = True

        self._drain()

    def _drain(self) -> None:
        while True:
            try:
                self.reporter.report(self._windows.get_nowait())
            except queue.Empty:
                return

    def shutdown(self) -> None:
        self.driver.stop()
        if self.server is not None:
            self.server.stop()
        self.geo.close()
        logger.info(
            "Exporter stopped: %d window(s), %d address(es) tracked",
            self.driver.windows_completed,
            len(self.aggregator),
        )
