"""CLI command: iptraffic run — start monitoring and (optionally) the exporter."""

from __future__ import annotations

import os
import signal
import sys

import click
from rich.console import Console

from iptraffic.config import BACKENDS, ExporterConfig
from iptraffic.errors import ConfigError
from iptraffic.runtime import ExporterRuntime

console = Console(stderr=True)


@click.command()
@click.option(
    "--backend",
    "-b",
    type=click.Choice(BACKENDS, case_sensitive=False),
    default=None,
    help="Traffic backend (default: iftop).",
)
@click.option("--iface", "-i", default=None, help="Network interface for iftop, e.g. eth0.")
@click.option(
    "--duration",
    "-d",
    type=int,
    default=None,
    help="Seconds to run (default: 30, 0 runs until interrupted).",
)
@click.option("--sample-interval", "-s", type=int, default=None, help="Sampling window in seconds.")
@click.option("--port", "-p", type=int, default=None, help="Serve /metrics on this port.")
@click.option(
    "--geoip-db",
    "-g",
    type=click.Path(dir_okay=False),
    default=None,
    help="GeoIP2/GeoLite2 City database (.mmdb).",
)
@click.option("--isp-db", type=click.Path(dir_okay=False), default=None, help="GeoIP2 ISP or GeoLite2 ASN database.")
@click.option(
    "--threshold",
    "-t",
    type=int,
    default=None,
    help="Only export IPs whose byte counter exceeds this (default: 1 MiB).",
)
@click.option("--bpftrace-script", type=click.Path(dir_okay=False), default=None, help="Custom bpftrace script.")
@click.option("--all-addresses", is_flag=True, help="Keep private/reserved addresses (bpftrace).")
@click.option("--no-root-check", is_flag=True, hidden=True)
@click.pass_context
def run(
    ctx: click.Context,
    backend: str | None,
    iface: str | None,
    duration: int | None,
    sample_interval: int | None,
    port: int | None,
    geoip_db: str | None,
    isp_db: str | None,
    threshold: int | None,
    bpftrace_script: str | None,
    all_addresses: bool,
    no_root_check: bool,
) -> None:
    """Measure per-remote-IP traffic and export it to Prometheus."""
    try:
        config = ExporterConfig.load(ctx.obj.get("config_path"))
        config.update(
            {
                "backend": backend,
                "interface": iface,
                "duration": duration,
                "sample_interval": sample_interval,
                "metrics_port": port,
                "geoip_db": geoip_db,
                "isp_db": isp_db,
                "export_threshold": threshold,
                "bpftrace_script": bpftrace_script,
                "public_only": False if all_addresses else None,
                "verbose": ctx.obj.get("verbose"),
            }
        )
        config.validate()
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(2)

    if not no_root_check and os.geteuid() != 0:
        console.print("[red]iptraffic must run as root (try sudo).[/red]")
        sys.exit(2)

    try:
        runtime = ExporterRuntime(config)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(2)

    _print_banner(config)

    def _signal_handler(signum: int, frame: object) -> None:
        console.print("\n[dim]Stopping...[/dim]")
        runtime.stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    sys.exit(runtime.run())


def _print_banner(config: ExporterConfig) -> None:
    console.print(f"[bold]iptraffic[/bold] using backend [cyan]{config.backend}[/cyan]")
    if config.is_unbounded:
        console.print(f"  Running until interrupted, sampling every {config.sample_interval}s")
        console.print("  Press Ctrl+C to stop.")
    else:
        console.print(
            f"  Duration: {config.duration}s, sampling every {config.sample_interval}s"
        )
    if config.metrics_port is not None:
        console.print(
            f"  Metrics: [cyan]http://{config.metrics_host}:{config.metrics_port}/metrics[/cyan] "
            f"(threshold {config.export_threshold} bytes)"
        )
    if config.geoip_db is None:
        console.print("  [dim]No GeoIP database — locations reported as Unknown[/dim]")
    console.print()
