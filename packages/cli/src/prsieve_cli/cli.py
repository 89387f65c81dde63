"""CLI entry point for prsieve.

Commands:
  review   run the batched, deduplicated AI review on a pull request
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.logging import RichHandler

from prsieve_cli.commands.review import review_cmd


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


@click.group()
@click.version_option(
    version=importlib.metadata.version("prsieve"),
    prog_name="prsieve",
)
@click.option(
    "--config",
    "config_path",
    default=".prsieve.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRSIEVE_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """AI pull request reviewer with batching and duplicate filtering."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


main.add_command(review_cmd)
