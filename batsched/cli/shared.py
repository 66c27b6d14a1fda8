"""Shared CLI helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from batsched.config import SchedulerConfig, load_scheduler_config
from batsched.errors import SchedulerError
from batsched.ledger.ledger import Ledger
from batsched.orchestrate.run import open_ledger, resolve_config

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Scheduler YAML (defaults apply when omitted).",
)
base_dir_option = click.option(
    "--base-dir",
    "-b",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
    default=None,
    help="The fe/ directory (default: ./ if named fe, else ./fe).",
)


def load_cli_config(
    config_path: Optional[Path],
    base_dir: Optional[Path],
    *,
    num_devices: Optional[int] = None,
    poll_interval_s: Optional[float] = None,
) -> SchedulerConfig:
    """
    Load the YAML, apply command-line overrides and resolve ``base_dir``.

    Configuration problems are reported as :class:`click.ClickException`.
    """
    try:
        cfg = load_scheduler_config(config_path)
        cfg = cfg.with_overrides(
            base_dir=base_dir,
            num_devices=num_devices,
            poll_interval_s=poll_interval_s,
        )
        return resolve_config(cfg)
    except ValidationError as exc:
        raise click.ClickException(f"Invalid configuration:\n{exc}") from exc
    except SchedulerError as exc:
        raise click.ClickException(str(exc)) from exc


def load_cli_ledger(cfg: SchedulerConfig) -> Ledger:
    if not cfg.tracking_path.is_dir():
        raise click.ClickException(
            f"No tracking directory at {cfg.tracking_path}; run 'batsched run' first."
        )
    return open_ledger(cfg)
