"""Command-line interface for batsched."""

from .root import cli

# register subcommands
from . import run_cmds  # noqa: F401
from . import ledger_cmds  # noqa: F401

__all__ = ["cli"]
