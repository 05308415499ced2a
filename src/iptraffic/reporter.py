"""Human-readable per-window traffic summary on the console."""

from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.table import Table

from iptraffic.aggregator import TrafficAggregator
from iptraffic.models import WindowSummary
from iptraffic.proc.identity import ProcessIdentityCache


def format_bytes(num: int | float) -> str:
    """Format a byte count with a binary unit (B, KB, MB, GB)."""
    value = float(num)
    if value >= 1024**3:
        return f"{value / 1024**3:.2f} GB"
    if value >= 1024**2:
        return f"{value / 1024**2:.2f} MB"
    if value >= 1024:
        return f"{value / 1024:.2f} KB"
    return f"{value:.0f} B"


class ConsoleReporter:
    """Prints one table per completed sampling window."""

    def __init__(
        self,
        aggregator: TrafficAggregator,
        identity: ProcessIdentityCache | None = None,
        console: Console | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._identity = identity
        self.console = console or Console()

    def report(self, summary: WindowSummary) -> None:
        stamp = datetime.fromtimestamp(summary.finished_at).strftime("%H:%M:%S")
        active = [d for d in summary.deltas if d.tx_bytes > 0 or d.rx_bytes > 0]
        if not active:
            self.console.print(f"[dim][{stamp}] window {summary.index}: no active connections[/dim]")
            return

        active.sort(key=lambda d: d.total_bytes, reverse=True)
        totals = self._aggregator.snapshot()

        table = Table(
            title=f"[{stamp}] window {summary.index}",
            title_justify="left",
            box=None,
            padding=(0, 2),
        )
        table.add_column("Remote IP", style="cyan")
        table.add_column("TX", justify="right")
        table.add_column("RX", justify="right")
        table.add_column("Total TX", justify="right", style="dim")
        table.add_column("Total RX", justify="right", style="dim")
        table.add_column("PID", justify="right")

        for delta in active:
            cumulative = totals.get(delta.remote_ip)
            pid = self._identity.resolve(delta.remote_ip) if self._identity else None
            table.add_row(
                delta.remote_ip,
                format_bytes(delta.tx_bytes),
                format_bytes(delta.rx_bytes),
                format_bytes(cumulative.tx_bytes) if cumulative else "-",
                format_bytes(cumulative.rx_bytes) if cumulative else "-",
                str(pid) if pid is not None else "-",
            )
        self.console.print(table)
