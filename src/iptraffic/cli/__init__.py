"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging

import click

from iptraffic import __version__


@click.group()
@click.version_option(version=__version__, prog_name="iptraffic")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to a YAML configuration file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """iptraffic — per-remote-IP traffic exporter for Prometheus."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from iptraffic.cli.run import run  # noqa: F811
    from iptraffic.cli.script import script  # noqa: F811

    main.add_command(run)
    main.add_command(script)


_register_commands()
