"""iptraffic — per-remote-IP traffic exporter for Prometheus."""

__version__ = "0.1.0"
