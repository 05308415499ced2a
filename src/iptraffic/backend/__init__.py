"""Traffic backends and the driver that streams their output."""
