"""Root CLI group."""

from __future__ import annotations

import click

from batsched._version import __version__


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="batsched")
def cli() -> None:
    """Schedule BAT free-energy windows across local GPUs, one job per GPU."""
