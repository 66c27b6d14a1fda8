"""The ``run`` command."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from loguru import logger

from batsched.cli.root import cli
from batsched.cli.shared import base_dir_option, config_option, load_cli_config
from batsched.config.utils import split_group_names
from batsched.errors import SchedulerError, SchedulerInterrupted
from batsched.orchestrate.run import run_automation


@cli.command("run")
@config_option
@base_dir_option
@click.option(
    "--phase",
    type=click.Choice(["all", "scan", "dispatch"], case_sensitive=False),
    default="all",
    show_default=True,
    help="scan: only fill the queue; dispatch: only run what is already queued.",
)
@click.option(
    "--groups",
    "-g",
    multiple=True,
    help="Group directories to scan (repeatable or space separated).",
)
@click.option("--skip-validation", is_flag=True, help="Skip the directory structure check.")
@click.option("--skip-permission-fix", is_flag=True, help="Do not chmod run-local.bash scripts.")
@click.option("--fresh", is_flag=True, help="Clear the ledger before scanning.")
@click.option("--devices", "-n", type=int, default=None, help="Number of GPUs to use.")
@click.option(
    "--poll-interval",
    type=float,
    default=None,
    help="Seconds between scheduler ticks (default from config: 5).",
)
def run_cmd(
    config_path: Optional[Path],
    base_dir: Optional[Path],
    phase: str,
    groups: Tuple[str, ...],
    skip_validation: bool,
    skip_permission_fix: bool,
    fresh: bool,
    devices: Optional[int],
    poll_interval: Optional[float],
) -> None:
    """
    Scan the fe/ tree and run every valid window, one job per GPU.

    Jobs keep running if the scheduler is interrupted; re-run with
    ``--phase dispatch`` to pick the queue up again.
    """
    cfg = load_cli_config(
        config_path, base_dir, num_devices=devices, poll_interval_s=poll_interval
    )
    selected = split_group_names(groups) or None
    if selected and phase.lower() == "dispatch":
        raise click.BadOptionUsage(
            "groups", "--groups selects windows to scan and cannot be used with --phase dispatch"
        )
    try:
        result = run_automation(
            cfg,
            phase=phase.lower(),
            groups=selected,
            skip_validation=skip_validation,
            skip_permission_fix=skip_permission_fix,
            fresh=fresh,
        )
    except SchedulerInterrupted as exc:
        logger.warning(f"{exc}")
        click.echo("Interrupted; launched jobs keep running in the background.", err=True)
        sys.exit(exc.exit_code)
    except SchedulerError as exc:
        logger.error(f"{exc}")
        raise click.ClickException(str(exc)) from exc

    if result.scan is not None:
        click.echo(f"Queued {result.scan.total} window(s) from {len(result.scan.groups)} group(s).")
    if result.summary is not None:
        s = result.summary
        click.echo(
            f"Dispatched {s.dispatched} job(s) on {result.num_devices} GPU(s) "
            f"(peak {s.peak_active} concurrent); "
            f"{s.succeeded} succeeded, {s.failed} failed, "
            f"{len(s.launch_failures)} failed to start."
        )
    stats = result.statistics
    click.echo(
        f"Totals: {stats.completed} completed, {stats.failed} failed "
        f"({stats.success_rate}% success)."
    )
