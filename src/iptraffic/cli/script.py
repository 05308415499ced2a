"""CLI command: iptraffic script — print the embedded bpftrace program."""

from __future__ import annotations

import click

from iptraffic.backend.bpftrace import render_script


@click.command()
@click.option(
    "--sample-interval",
    "-s",
    type=click.IntRange(min=1),
    default=2,
    show_default=True,
    help="Tick interval in seconds.",
)
def script(sample_interval: int) -> None:
    """Print the built-in bpftrace script (a starting point for --bpftrace-script)."""
    click.echo(render_script(sample_interval), nl=False)
