"""Launching windows as background processes and judging how they ended.

A finished process is classified from its output, not its exit code: the
final-stage ``md-02.out`` must contain ``Final Performance`` for the window
to count as a success.
"""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from loguru import logger

from batsched.config.settings import OutcomeSettings, SchedulerConfig, WindowLayout
from batsched.errors import LaunchError
from batsched.exec.environment import EnvironmentSnapshot
from batsched.ledger.records import ActiveJob, QueueEntry, TerminalStatus
from batsched.utils.permissions import make_executable

__all__ = [
    "ProcessHandle",
    "PopenHandle",
    "PidHandle",
    "ProcessSupervisor",
    "classify_window",
]


# ---------- process handles ----------
class ProcessHandle(Protocol):
    """Liveness probe for one launched job."""

    pid: int
    returncode: Optional[int]

    def is_alive(self) -> bool:
        ...

    def wait_nonblocking(self) -> bool:
        """Reap the process if it has exited; ``True`` once it is gone."""
        ...

    def terminate(self) -> None:
        ...


class PopenHandle:
    """Handle for a child launched in this scheduler session."""

    def __init__(self, proc: subprocess.Popen):
        self._proc = proc
        self.pid = proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def wait_nonblocking(self) -> bool:
        return self._proc.poll() is not None

    def is_alive(self) -> bool:
        return not self.wait_nonblocking()

    def terminate(self) -> None:
        self._proc.terminate()


class PidHandle:
    """
    Handle rebuilt from a persisted pid, e.g. after the scheduler restarted.

    Liveness is probed with signal 0; the exit status of a process that is not
    our child cannot be recovered, so :attr:`returncode` stays ``None``.
    """

    def __init__(self, pid: int):
        self.pid = int(pid)
        self.returncode: Optional[int] = None

    def wait_nonblocking(self) -> bool:
        try:
            done, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            pass
        else:
            if done == self.pid:
                self.returncode = os.waitstatus_to_exitcode(status)
                return True
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            # exists but owned by someone else
            return False
        return False

    def is_alive(self) -> bool:
        return not self.wait_nonblocking()

    def terminate(self) -> None:
        try:
            os.kill(self.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass


def classify_window(window_dir: Path, outcome: OutcomeSettings) -> TerminalStatus:
    """
    Classify a finished window from its final output file.

    Returns
    -------
    TerminalStatus
        ``SUCCESS`` when the output holds the success marker, ``INCOMPLETE``
        when the output exists without it, ``FAILED`` when there is no output.
    """
    out = Path(window_dir) / outcome.success_file
    if not out.is_file():
        return TerminalStatus.FAILED
    try:
        with open(out, "r", errors="replace") as f:
            for line in f:
                if outcome.success_marker in line:
                    return TerminalStatus.SUCCESS
    except OSError as exc:
        logger.warning(f"[EXEC] Could not read {out}: {exc}")
    return TerminalStatus.INCOMPLETE


# ---------- supervisor ----------
class ProcessSupervisor:
    """
    Start windows on a single GPU each and report their terminal status.

    Parameters
    ----------
    layout : WindowLayout
        Provides the entry-point name.
    outcome : OutcomeSettings
        Success file/marker, log name and stale-output patterns.
    environment : EnvironmentSnapshot
        Environment captured at scheduler start.
    device_env_var : str
        Variable carrying the GPU index into the job.
    start_grace_s : float
        Delay after launch before liveness is re-checked.
    sleep, clock : callable, optional
        Injected for tests.
    """

    def __init__(
        self,
        layout: WindowLayout,
        outcome: OutcomeSettings,
        environment: EnvironmentSnapshot,
        *,
        device_env_var: str = "CUDA_VISIBLE_DEVICES",
        start_grace_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.layout = layout
        self.outcome = outcome
        self.environment = environment
        self.device_env_var = device_env_var
        self.start_grace_s = float(start_grace_s)
        self._sleep = sleep
        self._clock = clock
        self._handles: Dict[int, ProcessHandle] = {}

    @classmethod
    def from_config(
        cls, cfg: SchedulerConfig, environment: Optional[EnvironmentSnapshot] = None
    ) -> "ProcessSupervisor":
        env = environment or EnvironmentSnapshot.capture(cfg.environment.preserved_vars)
        return cls(
            cfg.layout,
            cfg.outcome,
            env,
            device_env_var=cfg.devices.env_var,
            start_grace_s=cfg.dispatch.start_grace_s,
        )

    # ---------- preparation ----------
    def entry_point(self, window: QueueEntry) -> Path:
        return window.path / self.layout.entry_point

    def ensure_executable(self, window: QueueEntry) -> Path:
        """
        Return the entry point, adding execute permission once if needed.

        Raises
        ------
        LaunchError
            If the window directory or script is missing, or cannot be made
            executable.
        """
        if not window.path.is_dir():
            raise LaunchError(window.label, f"window directory not found: {window.path}")
        script = self.entry_point(window)
        if not script.is_file():
            raise LaunchError(window.label, f"{self.layout.entry_point} not found in {window.path}")
        if os.access(script, os.X_OK):
            return script
        try:
            make_executable(script)
        except OSError as exc:
            raise LaunchError(window.label, f"cannot make {script.name} executable: {exc}") from exc
        if not os.access(script, os.X_OK):
            raise LaunchError(window.label, f"cannot make {script.name} executable")
        logger.debug(f"[EXEC] Fixed permissions on {script}")
        return script

    def clean_outputs(self, window_dir: Path) -> List[Path]:
        """Remove outputs of a previous attempt; inputs are left alone."""
        removed: List[Path] = []
        for pattern in self.outcome.stale_outputs:
            for p in sorted(window_dir.glob(pattern)):
                if p.is_file() or p.is_symlink():
                    p.unlink(missing_ok=True)
                    removed.append(p)
        if removed:
            logger.debug(f"[EXEC] Cleaned {len(removed)} output file(s) in {window_dir}")
        return removed

    # ---------- launch ----------
    def launch(self, entry: QueueEntry, device: int) -> ActiveJob:
        """
        Start ``entry`` pinned to ``device``.

        The job runs in its own session with ``cwd`` at the window directory,
        the captured environment, ``<device_env_var>`` set to the physical id
        behind pool index ``device``, and its output redirected to the
        window's log file.

        Raises
        ------
        LaunchError
            If the entry point is unusable, stale outputs cannot be removed,
            the process cannot be spawned, or it is no longer alive after the
            grace period.
        """
        script = self.ensure_executable(entry)
        try:
            self.clean_outputs(entry.path)
        except OSError as exc:
            raise LaunchError(entry.label, f"cannot remove previous outputs: {exc}") from exc
        try:
            env = self.environment.for_device(device, self.device_env_var)
        except ValueError as exc:
            raise LaunchError(entry.label, str(exc)) from exc
        log_path = entry.path / self.outcome.log_name
        try:
            with open(log_path, "w") as log:
                proc = subprocess.Popen(
                    [str(script)],
                    cwd=entry.path,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise LaunchError(entry.label, f"could not start {script.name}: {exc}") from exc

        handle = PopenHandle(proc)
        started_at = int(self._clock())
        logger.info(f"[EXEC] Started: {entry.label} on GPU {device} (PID {handle.pid})")

        if self.start_grace_s > 0:
            self._sleep(self.start_grace_s)
        if not handle.is_alive():
            raise LaunchError(
                entry.label,
                f"process exited during start-up (rc={handle.returncode}); see {log_path}",
            )
        self._handles[handle.pid] = handle
        return ActiveJob(window=entry, device=device, pid=handle.pid, started_at=started_at)

    # ---------- monitoring ----------
    def handle_for(self, job: ActiveJob) -> ProcessHandle:
        handle = self._handles.get(job.pid)
        if handle is None:
            handle = PidHandle(job.pid)
            self._handles[job.pid] = handle
        return handle

    def adopt(self, job: ActiveJob, handle: ProcessHandle) -> None:
        self._handles[job.pid] = handle

    def poll_outcome(self, job: ActiveJob) -> Optional[TerminalStatus]:
        """
        Non-blocking probe of ``job``.

        Returns
        -------
        TerminalStatus or None
            ``None`` while the process is alive, otherwise the classification
            of its output.
        """
        handle = self.handle_for(job)
        if handle.is_alive():
            return None
        self._handles.pop(job.pid, None)
        status = classify_window(job.window.path, self.outcome)
        logger.debug(
            f"[EXEC] {job.window.label} exited (rc={handle.returncode}); classified {status.value}"
        )
        return status

    def terminate(self, job: ActiveJob) -> bool:
        """Send SIGTERM to ``job``; ``False`` if it was no longer running."""
        handle = self.handle_for(job)
        if not handle.is_alive():
            self._handles.pop(job.pid, None)
            return False
        handle.terminate()
        logger.info(f"[EXEC] Stopped job: PID {job.pid} ({job.window.label})")
        return True
