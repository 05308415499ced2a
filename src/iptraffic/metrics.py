"""Prometheus exposition of the per-IP traffic table."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from iptraffic.aggregator import TrafficAggregator
from iptraffic.geo import GeoEnrichmentCache
from iptraffic.models import GeoRecord
from iptraffic.proc.identity import ProcessIdentityCache

logger = logging.getLogger(__name__)

DEFAULT_EXPORT_THRESHOLD = 1024 * 1024

LABELS = ["remote_ip", "country", "province", "city", "isp"]


class TrafficCollector:
    """Custom collector: one snapshot per scrape, enrichment outside the lock.

    An IP's series is exported only when the counter exceeds the export
    threshold; IPs below it are still tracked by the aggregator.
    """

    def __init__(
        self,
        aggregator: TrafficAggregator,
        geo: GeoEnrichmentCache | None = None,
        identity: ProcessIdentityCache | None = None,
        threshold: int = DEFAULT_EXPORT_THRESHOLD,
    ) -> None:
        self._aggregator = aggregator
        self._geo = geo
        self._identity = identity
        self.threshold = threshold

    def collect(self) -> Iterator[Metric]:
        stats = self._aggregator.snapshot()

        tx = CounterMetricFamily(
            "ip_traffic_tx_bytes",
            "Total transmitted bytes per IP address",
            labels=LABELS,
        )
        rx = CounterMetricFamily(
            "ip_traffic_rx_bytes",
            "Total received bytes per IP address",
            labels=LABELS,
        )
        owner = GaugeMetricFamily(
            "ip_traffic_owner_pid",
            "PID of the local process first seen holding a connection to the IP",
            labels=["remote_ip"],
        )

        for ip in sorted(stats):
            traffic = stats[ip]
            export_tx = traffic.tx_bytes > self.threshold
            export_rx = traffic.rx_bytes > self.threshold
            if not (export_tx or export_rx):
                continue

            labels = self._label_values(ip)
            if export_tx:
                tx.add_metric(labels, traffic.tx_bytes)
            if export_rx:
                rx.add_metric(labels, traffic.rx_bytes)

            pid = self._identity.resolve(ip) if self._identity is not None else None
            if pid is not None:
                owner.add_metric([ip], pid)

        tracked = GaugeMetricFamily(
            "ip_traffic_tracked_ips",
            "Remote IPs tracked in memory, including those below the export threshold",
            value=len(stats),
        )

        yield tx
        yield rx
        yield owner
        yield tracked

    def _label_values(self, ip: str) -> list[str]:
        geo = self._geo.lookup(ip) if self._geo is not None else GeoRecord.unknown()
        return [ip, geo.country, geo.province, geo.city, geo.isp]


class MetricsRenderer:
    """Renders the exposition document on demand."""

    def __init__(
        self,
        aggregator: TrafficAggregator,
        geo: GeoEnrichmentCache | None = None,
        identity: ProcessIdentityCache | None = None,
        threshold: int = DEFAULT_EXPORT_THRESHOLD,
    ) -> None:
        self.collector = TrafficCollector(aggregator, geo, identity, threshold)
        self.registry = CollectorRegistry(auto_describe=False)
        self.registry.register(self.collector)

    @property
    def threshold(self) -> int:
        return self.collector.threshold

    def render(self) -> bytes:
        """Return the text exposition document for the current snapshot."""
        return generate_latest(self.registry)
