"""
batsched.orchestrate.run
========================

Top-level entry for one automation run over an ``fe/`` directory.

This module wires:
config → validation (GPUs, directory structure) → ledger → permission fix →
scan into the queue → scheduling loop → execution summary.
"""

from __future__ import annotations

import shutil
import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal, Optional, Sequence

from loguru import logger

from batsched.config.settings import SchedulerConfig, resolve_base_dir
from batsched.errors import ConfigError, StructureError
from batsched.exec.devices import DeviceAllocator, detect_num_devices
from batsched.exec.environment import missing_executables
from batsched.exec.supervisor import ProcessSupervisor
from batsched.ledger.ledger import Ledger
from batsched.ledger.store import FileLedgerStore
from batsched.orchestrate.loop import RunSummary, SchedulingLoop
from batsched.orchestrate.report import ExecutionStatistics, execution_statistics
from batsched.utils.logging import configure_logging
from batsched.utils.permissions import fix_all_permissions
from batsched.windows.scanner import InventoryScanner, ScanSummary, queue_windows

__all__ = [
    "Phase",
    "AutomationResult",
    "resolve_config",
    "check_executables",
    "open_ledger",
    "run_automation",
    "stop_all_jobs",
]

Phase = Literal["all", "scan", "dispatch"]


@dataclass
class AutomationResult:
    base_dir: Path
    num_devices: Optional[int]
    scan: Optional[ScanSummary]
    summary: Optional[RunSummary]
    statistics: ExecutionStatistics


def resolve_config(cfg: SchedulerConfig) -> SchedulerConfig:
    """
    Return ``cfg`` with ``base_dir`` resolved.

    Raises
    ------
    StructureError
        If no ``fe/`` directory can be located.
    """
    if cfg.base_dir is not None:
        if not cfg.base_dir.is_dir():
            raise StructureError(f"Base directory does not exist: {cfg.base_dir}")
        return cfg
    try:
        base = resolve_base_dir()
    except FileNotFoundError as exc:
        raise StructureError(str(exc)) from exc
    return cfg.with_overrides(base_dir=base)


def check_executables(cfg: SchedulerConfig) -> None:
    """
    Check that every ``environment.required_executables`` entry is on ``PATH``.

    Raises
    ------
    ConfigError
        Naming the programs that are missing.
    """
    missing = missing_executables(cfg.environment.required_executables)
    if missing:
        names = ", ".join(missing)
        raise ConfigError(
            f"Required executable(s) not found on PATH: {names} "
            "(load the Amber module or adjust environment.required_executables)"
        )
    for name in cfg.environment.required_executables:
        logger.debug(f"[EXEC] Found {name}: {shutil.which(name)}")


def open_ledger(cfg: SchedulerConfig, *, fresh: bool = False) -> Ledger:
    """Open the file-backed ledger under the tracking directory, creating it if needed."""
    store = FileLedgerStore(cfg.tracking_path, cfg.ledger)
    store.initialize()
    ledger = Ledger(store)
    if fresh:
        ledger.clear()
    return ledger


def _log_scan(cfg: SchedulerConfig, scan: ScanSummary) -> None:
    logger.info("[SCAN] Job distribution:")
    for label, n in scan.breakdown(cfg.layout):
        logger.info(f"[SCAN]   {label}: {n}")
    if scan.rejected:
        logger.warning(f"[SCAN] {scan.rejected} window(s) already queued or running were skipped")


def _log_statistics(stats: ExecutionStatistics) -> None:
    logger.info(
        f"Execution statistics: completed {stats.completed}, failed {stats.failed}, "
        f"success rate {stats.success_rate}%"
    )
    if stats.avg_duration is not None:
        logger.info(
            f"Durations (completed jobs): avg {stats.avg_duration}s, "
            f"min {stats.min_duration}s, max {stats.max_duration}s"
        )


def run_automation(
    cfg: SchedulerConfig,
    *,
    phase: Phase = "all",
    groups: Optional[Sequence[str]] = None,
    skip_validation: bool = False,
    skip_permission_fix: bool = False,
    fresh: bool = False,
    setup_logging: bool = True,
    supervisor: Optional[ProcessSupervisor] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AutomationResult:
    """
    Validate, scan and dispatch every window under ``cfg.base_dir``.

    Parameters
    ----------
    cfg : SchedulerConfig
        Run configuration; ``base_dir`` is resolved from the working
        directory when unset.
    phase : {"all", "scan", "dispatch"}
        ``scan`` only fills the queue, ``dispatch`` only drains an existing
        queue.
    groups : sequence of str, optional
        Restrict scanning to these group directories; ignored, with a
        warning, when nothing is scanned.
    skip_validation : bool
        Skip the directory structure and required-executable checks.
    skip_permission_fix : bool
        Do not chmod entry points before dispatch.
    fresh : bool
        Clear the ledger before scanning.
    setup_logging : bool
        Install the file sinks under ``<base_dir>/<log_dir>``.
    supervisor : ProcessSupervisor, optional
        Replaces the default supervisor built from ``cfg``.
    sleep : callable, optional
        Sleep used by the loop and allocator.

    Returns
    -------
    AutomationResult

    Raises
    ------
    StructureError, DeviceDetectionError, ConfigError
        On validation failures (directory tree, GPUs, missing executables).
    DeviceWaitTimeout
        If no GPU frees within ``devices.max_wait_s``.
    SchedulerInterrupted
        On Ctrl+C or SIGTERM; launched jobs keep running.
    """
    if phase not in ("all", "scan", "dispatch"):
        raise ValueError(f"Unknown phase: {phase!r}")
    cfg = resolve_config(cfg)
    base_dir = cfg.require_base_dir()
    if setup_logging:
        configure_logging(cfg.log_path, cfg.logging)
    logger.info(f"Starting window automation in {base_dir} (phase: {phase})")

    scanning = phase in ("all", "scan")
    dispatching = phase in ("all", "dispatch")
    if groups and not scanning:
        logger.warning("Group selection only applies when scanning; dispatching the whole queue")

    # ---------- validate ----------
    num_devices: Optional[int] = None
    if dispatching:
        num_devices = detect_num_devices(cfg.devices.count, cfg.devices.env_var)
    scanner = InventoryScanner(cfg.layout, base_dir, groups)
    if skip_validation:
        logger.warning("Skipping structure and executable validation")
    else:
        usable = scanner.validate_structure()
        logger.info(f"Found {len(usable)} valid group(s)")
        if dispatching:
            check_executables(cfg)

    ledger = open_ledger(cfg, fresh=fresh)

    # ---------- prepare ----------
    if skip_permission_fix:
        logger.info("Skipping permission fix")
    else:
        fix_all_permissions(scanner.entry_points())

    # ---------- scan ----------
    scan: Optional[ScanSummary] = None
    if scanning:
        scan = queue_windows(ledger, scanner.scan())
        _log_scan(cfg, scan)

    # ---------- dispatch ----------
    summary: Optional[RunSummary] = None
    if num_devices is not None:
        if ledger.is_idle:
            logger.warning("No jobs queued and none running; nothing to dispatch")
        else:
            allocator = DeviceAllocator(
                num_devices, ledger, poll_s=cfg.dispatch.poll_interval_s, sleep=sleep
            )
            sup = supervisor or ProcessSupervisor.from_config(cfg)
            loop = SchedulingLoop.from_config(cfg, ledger, allocator, sup, sleep=sleep)
            summary = _run_loop(loop)

    stats = execution_statistics(ledger)
    _log_statistics(stats)

    if cfg.ledger.cleanup_on_completion and ledger.is_idle and dispatching:
        logger.info(f"Removing tracking directory {cfg.tracking_path}")
        ledger.store.remove()

    return AutomationResult(
        base_dir=base_dir,
        num_devices=num_devices,
        scan=scan,
        summary=summary,
        statistics=stats,
    )


def _run_loop(loop: SchedulingLoop) -> RunSummary:
    """Run ``loop`` with SIGTERM mapped to :meth:`SchedulingLoop.request_stop`."""
    if threading.current_thread() is not threading.main_thread():
        return loop.run()

    def _on_term(signum, frame):
        logger.warning(f"Received signal {signum}; stopping after the current tick")
        loop.request_stop()

    previous = signal.signal(signal.SIGTERM, _on_term)
    try:
        return loop.run()
    finally:
        signal.signal(signal.SIGTERM, previous)


def stop_all_jobs(ledger: Ledger, supervisor: ProcessSupervisor) -> int:
    """
    SIGTERM every active job and forget it.

    The stopped windows get no terminal record; re-scan or re-queue them to
    run them again.

    Returns
    -------
    int
        Number of processes that were still running and were signalled.
    """
    if not ledger.active_count:
        logger.info("No active jobs to stop")
        return 0
    logger.warning("Stopping all active jobs")
    stopped = 0
    for job in ledger.active:
        if supervisor.terminate(job):
            stopped += 1
        ledger.discard_active(job)
    logger.info(f"Stopped {stopped} job(s)")
    return stopped
