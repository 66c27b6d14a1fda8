"""Status, reporting and operator commands over the tracking directory."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional, Tuple

import click

from batsched.cli.root import cli
from batsched.cli.shared import base_dir_option, config_option, load_cli_config, load_cli_ledger
from batsched.errors import DeviceDetectionError
from batsched.exec.devices import DeviceAllocator, detect_num_devices
from batsched.exec.supervisor import ProcessSupervisor
from batsched.ledger.records import TerminalStatus
from batsched.orchestrate.report import (
    active_frame,
    execution_statistics,
    progress_percent,
    terminal_frame,
)
from batsched.orchestrate.run import stop_all_jobs


@cli.command("status")
@config_option
@base_dir_option
def status(config_path: Optional[Path], base_dir: Optional[Path]) -> None:
    """Show queue counts, progress and running jobs."""
    cfg = load_cli_config(config_path, base_dir)
    ledger = load_cli_ledger(cfg)
    counts = ledger.counts()
    click.echo(click.style(f"Windows under {cfg.require_base_dir()}", bold=True))
    click.echo(
        f"Queued: {counts['queued']}  Running: {counts['active']}  "
        f"Completed: {counts['completed']}  Failed: {counts['failed']}"
    )
    click.echo(f"Progress: {progress_percent(ledger)}%")
    if ledger.paused:
        click.echo(click.style("Job queue is PAUSED", fg="yellow"))
    df = active_frame(ledger, time.time())
    if not df.empty:
        click.echo("-" * 70)
        click.echo(df.to_string(index=False))


@cli.command("devices")
@config_option
@base_dir_option
@click.option("--devices", "-n", type=int, default=None, help="Number of GPUs in the pool.")
def devices_cmd(config_path: Optional[Path], base_dir: Optional[Path], devices: Optional[int]) -> None:
    """Show which window each GPU is running."""
    cfg = load_cli_config(config_path, base_dir, num_devices=devices)
    ledger = load_cli_ledger(cfg)
    try:
        n = detect_num_devices(cfg.devices.count, cfg.devices.env_var)
    except DeviceDetectionError as exc:
        raise click.ClickException(str(exc)) from exc
    allocator = DeviceAllocator(n, ledger)
    now = time.time()
    for gpu, job in allocator.bindings().items():
        if job is None:
            click.echo(f"GPU {gpu}: free")
        else:
            click.echo(f"GPU {gpu}: {job.window.label} (PID {job.pid}, {job.elapsed(now)}s)")
    busy = allocator.max_jobs_per_device()
    if busy > 1:
        click.echo(click.style(f"WARNING: {busy} jobs share one GPU", fg="red"))


@cli.command("report")
@config_option
@base_dir_option
@click.option("--failed-only", is_flag=True, help="Only list failed and incomplete windows.")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the table to this CSV file.",
)
def report(
    config_path: Optional[Path],
    base_dir: Optional[Path],
    failed_only: bool,
    csv_path: Optional[Path],
) -> None:
    """List finished windows and execution statistics."""
    cfg = load_cli_config(config_path, base_dir)
    ledger = load_cli_ledger(cfg)
    records = ledger.failed if failed_only else ledger.completed + ledger.failed
    df = terminal_frame(records)
    if df.empty:
        click.echo("No finished windows recorded.")
    else:
        click.echo(df.drop(columns="path").to_string(index=False))
        if csv_path is not None:
            df.to_csv(csv_path, index=False)
            click.echo(f"Wrote {len(df)} row(s) to {csv_path}")

    stats = execution_statistics(ledger)
    click.echo("-" * 70)
    click.echo(click.style("Execution statistics", bold=True))
    click.echo(f"Completed: {stats.completed}  Failed: {stats.failed}  Success rate: {stats.success_rate}%")
    if stats.avg_duration is not None:
        click.echo(
            f"Duration (s): avg {stats.avg_duration}  min {stats.min_duration}  max {stats.max_duration}"
        )


@cli.command("pause")
@config_option
@base_dir_option
def pause(config_path: Optional[Path], base_dir: Optional[Path]) -> None:
    """Stop starting new jobs; running jobs continue."""
    cfg = load_cli_config(config_path, base_dir)
    load_cli_ledger(cfg).pause()
    click.echo("Job queue paused.")


@cli.command("resume")
@config_option
@base_dir_option
def resume(config_path: Optional[Path], base_dir: Optional[Path]) -> None:
    """Resume starting queued jobs."""
    cfg = load_cli_config(config_path, base_dir)
    load_cli_ledger(cfg).resume()
    click.echo("Job queue resumed.")


@cli.command("clear")
@config_option
@base_dir_option
@click.option("--keep-terminal", is_flag=True, help="Keep completed and failed records.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def clear(config_path: Optional[Path], base_dir: Optional[Path], keep_terminal: bool, yes: bool) -> None:
    """Empty the queue and forget active jobs (processes are not killed)."""
    cfg = load_cli_config(config_path, base_dir)
    ledger = load_cli_ledger(cfg)
    if ledger.active_count and not yes:
        click.confirm(
            f"{ledger.active_count} job(s) are recorded as running and will be forgotten. Continue?",
            abort=True,
        )
    ledger.clear(keep_terminal=keep_terminal)
    click.echo("Ledger cleared.")


@cli.command("requeue-failed")
@config_option
@base_dir_option
@click.option(
    "--status",
    "statuses",
    type=click.Choice(["incomplete", "failed"], case_sensitive=False),
    multiple=True,
    help="Only re-queue windows with this outcome (repeatable; default: both).",
)
def requeue_failed(
    config_path: Optional[Path], base_dir: Optional[Path], statuses: Tuple[str, ...]
) -> None:
    """Append failed windows to the back of the queue."""
    cfg = load_cli_config(config_path, base_dir)
    ledger = load_cli_ledger(cfg)
    wanted = [TerminalStatus(s.upper()) for s in statuses] or None
    requeued = ledger.requeue_failed(wanted)
    if not requeued:
        click.echo("No failed windows to re-queue.")
        return
    click.echo(f"Re-queued {len(requeued)} window(s):")
    for entry in requeued:
        click.echo(f"  - {entry.label}")
    click.echo("Run 'batsched run --phase dispatch' to start them.")


@cli.command("stop-jobs")
@config_option
@base_dir_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def stop_jobs(config_path: Optional[Path], base_dir: Optional[Path], yes: bool) -> None:
    """Send SIGTERM to every running job and forget it."""
    cfg = load_cli_config(config_path, base_dir)
    ledger = load_cli_ledger(cfg)
    if not ledger.active_count:
        click.echo("No active jobs to stop.")
        return
    if not yes:
        click.confirm(f"Stop {ledger.active_count} running job(s)?", abort=True)
    stopped = stop_all_jobs(ledger, ProcessSupervisor.from_config(cfg))
    click.echo(f"Stopped {stopped} job(s).")
