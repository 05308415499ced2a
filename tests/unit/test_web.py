"""Tests for the /metrics HTTP endpoint."""

from __future__ import annotations

from fastapi.testclient import TestClient

from iptraffic.metrics import MetricsRenderer
from iptraffic.models import TrafficDelta
from iptraffic.web.app import MetricsServer, create_app


def test_metrics_endpoint(seeded_aggregator):
    client = TestClient(create_app(MetricsRenderer(seeded_aggregator)))
    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'remote_ip="93.184.216.34"' in resp.text
    assert "1.1.1.1" not in resp.text


def test_each_scrape_sees_latest_counters(seeded_aggregator):
    client = TestClient(create_app(MetricsRenderer(seeded_aggregator, threshold=0)))
    before = client.get("/metrics").text
    seeded_aggregator.apply(TrafficDelta("8.8.8.8", tx_bytes=10))
    after = client.get("/metrics").text

    assert "8.8.8.8" not in before
    assert 'remote_ip="8.8.8.8"' in after


def test_docs_disabled(aggregator):
    client = TestClient(create_app(MetricsRenderer(aggregator)))
    assert client.get("/docs").status_code == 404


def test_server_not_running_until_started(aggregator):
    server = MetricsServer(create_app(MetricsRenderer(aggregator)), "127.0.0.1", 9100)
    assert not server.is_running
    server.stop()
