"""The polling loop that moves windows from the queue onto free GPUs.

One tick:

1. poll every active job; retire finished ones and free their GPU;
2. unless paused, pop queued windows onto free GPUs in FIFO order, blocking
   (bounded by ``max_wait_s``) when the queue is non-empty and every GPU is
   busy;
3. sleep ``poll_s``;
4. stop once nothing is queued and nothing is active.

Stopping the loop never touches launched processes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from loguru import logger

from batsched.config.settings import SchedulerConfig
from batsched.errors import DeviceWaitTimeout, LaunchError, SchedulerInterrupted
from batsched.exec.devices import DeviceAllocator
from batsched.exec.supervisor import ProcessSupervisor
from batsched.ledger.ledger import Ledger
from batsched.ledger.records import ActiveJob, TerminalRecord, TerminalStatus

__all__ = ["LoopState", "TickReport", "RunSummary", "SchedulingLoop"]


class LoopState(str, Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    DRAINING = "DRAINING"
    STOPPED = "STOPPED"


@dataclass
class TickReport:
    tick: int
    retired: List[TerminalRecord] = field(default_factory=list)
    dispatched: List[ActiveJob] = field(default_factory=list)
    active: int = 0
    queued: int = 0
    paused: bool = False


@dataclass
class RunSummary:
    """What one :meth:`SchedulingLoop.run` call did."""

    ticks: int = 0
    dispatched: int = 0
    peak_active: int = 0
    retired: List[TerminalRecord] = field(default_factory=list)
    launch_failures: List[Tuple[str, str]] = field(default_factory=list)
    state: LoopState = LoopState.RUNNING

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.retired if r.status is TerminalStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.retired if r.status is not TerminalStatus.SUCCESS)


class _WaitAborted(Exception):
    """Raised from the device-wait hook when pause or stop is requested."""


class SchedulingLoop:
    """
    Single-threaded scheduler driving the ledger, allocator and supervisor.

    Parameters
    ----------
    ledger : Ledger
        Queue and job state; only this loop writes to it while running.
    allocator : DeviceAllocator
        GPU pool bound to ``ledger``.
    supervisor : ProcessSupervisor
        Launches windows and classifies finished ones.
    poll_s : float
        Sleep between ticks.
    max_wait_s : float
        Bound on a single wait for a free GPU.
    drain_on_timeout : bool
        On a GPU-wait timeout, keep reconciling until running jobs have
        finished before the timeout error propagates.
    sleep : callable, optional
        Injected for tests.
    on_tick : callable, optional
        Called with every :class:`TickReport`.
    """

    def __init__(
        self,
        ledger: Ledger,
        allocator: DeviceAllocator,
        supervisor: ProcessSupervisor,
        *,
        poll_s: float = 5.0,
        max_wait_s: float = 3600.0,
        drain_on_timeout: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        on_tick: Optional[Callable[[TickReport], None]] = None,
    ):
        if allocator.ledger is not ledger:
            raise ValueError("allocator must be bound to the same ledger")
        self.ledger = ledger
        self.allocator = allocator
        self.supervisor = supervisor
        self.poll_s = float(poll_s)
        self.max_wait_s = float(max_wait_s)
        self.drain_on_timeout = bool(drain_on_timeout)
        self._sleep = sleep
        self._on_tick = on_tick
        self._state = LoopState.RUNNING
        self._stop_requested = False
        self._ticks = 0
        self._summary = RunSummary()

    @classmethod
    def from_config(
        cls,
        cfg: SchedulerConfig,
        ledger: Ledger,
        allocator: DeviceAllocator,
        supervisor: ProcessSupervisor,
        **kwargs,
    ) -> "SchedulingLoop":
        return cls(
            ledger,
            allocator,
            supervisor,
            poll_s=cfg.dispatch.poll_interval_s,
            max_wait_s=cfg.devices.max_wait_s,
            drain_on_timeout=cfg.devices.drain_on_timeout,
            **kwargs,
        )

    # ---------- state ----------
    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def summary(self) -> RunSummary:
        return self._summary

    def request_stop(self) -> None:
        """Stop before the next tick (signal-handler safe)."""
        self._stop_requested = True

    def _set_state(self, state: LoopState) -> None:
        if state is not self._state:
            logger.debug(f"[LOOP] {self._state.value} -> {state.value}")
            if state is LoopState.PAUSED:
                logger.warning("[LOOP] Job queue paused - no new jobs will start")
            elif self._state is LoopState.PAUSED and state is LoopState.RUNNING:
                logger.info("[LOOP] Job queue resumed")
            self._state = state
            self._summary.state = state

    # ---------- step 1: completions ----------
    def reconcile(self) -> List[TerminalRecord]:
        """Retire every active job whose process has exited."""
        retired: List[TerminalRecord] = []
        for job in self.ledger.active:
            status = self.supervisor.poll_outcome(job)
            if status is None:
                continue
            record = self.ledger.retire(job, status)
            self.allocator.release(job.device)
            retired.append(record)
            label = job.window.label
            if status is TerminalStatus.SUCCESS:
                logger.info(f"[LOOP] Job completed: {label} ({record.duration}s)")
            elif status is TerminalStatus.INCOMPLETE:
                logger.warning(f"[LOOP] Job incomplete: {label} ({record.duration}s)")
            else:
                logger.error(f"[LOOP] Job failed: {label} (no output after {record.duration}s)")
        self._summary.retired.extend(retired)
        return retired

    # ---------- step 2: dispatch ----------
    def _wait_hook(self) -> None:
        if self._stop_requested or self.ledger.paused:
            raise _WaitAborted()
        self.reconcile()

    def _dispatch_one(self, device: int) -> Optional[ActiveJob]:
        entry = self.ledger.dequeue_front()
        if entry is None:
            return None
        try:
            job = self.supervisor.launch(entry, device)
        except LaunchError as exc:
            logger.error(f"[LOOP] Job failed to start: {exc}")
            self._summary.launch_failures.append((entry.label, exc.reason))
            return None
        self.allocator.bind(device, job)
        self._summary.dispatched += 1
        self._summary.peak_active = max(self._summary.peak_active, self.ledger.active_count)
        logger.info(
            f"[LOOP] Started: {entry.label} (GPU {device}) | "
            f"Running: {self.ledger.active_count}/{self.allocator.num_devices} | "
            f"Done: {self.ledger.completed_count} | Failed: {self.ledger.failed_count} | "
            f"Queue: {self.ledger.queued_count}"
        )
        return job

    def dispatch(self) -> List[ActiveJob]:
        """
        Launch queued windows onto free GPUs, oldest first.

        Raises
        ------
        DeviceWaitTimeout
            If the queue is non-empty and no GPU frees within ``max_wait_s``.
        """
        dispatched: List[ActiveJob] = []
        while self.ledger.queued_count and not self._stop_requested and not self.ledger.paused:
            device = self.allocator.free_device()
            if device is None:
                try:
                    device = self.allocator.wait_for_free_device(
                        self.max_wait_s, on_poll=self._wait_hook
                    )
                except _WaitAborted:
                    break
            job = self._dispatch_one(device)
            if job is not None:
                dispatched.append(job)
        return dispatched

    # ---------- ticks ----------
    def tick(self) -> TickReport:
        self._ticks += 1
        self._summary.ticks = self._ticks
        report = TickReport(tick=self._ticks)
        report.retired = self.reconcile()
        if self.ledger.paused:
            self._set_state(LoopState.PAUSED)
            report.paused = True
        else:
            self._set_state(LoopState.RUNNING)
            report.dispatched = self.dispatch()
        report.active = self.ledger.active_count
        report.queued = self.ledger.queued_count
        if self.allocator.max_jobs_per_device() > 1:
            logger.error("[LOOP] GPU distribution violated: more than one job on a GPU")
        if self._on_tick is not None:
            self._on_tick(report)
        return report

    def drain(self) -> None:
        """Reconcile without dispatching until no job is active."""
        self._set_state(LoopState.DRAINING)
        while self.ledger.active_count:
            if self._stop_requested:
                raise SchedulerInterrupted("Interrupted while draining active jobs")
            self._sleep(self.poll_s)
            self.reconcile()

    def _halt(self) -> None:
        self._set_state(LoopState.STOPPED)
        logger.warning("[LOOP] User interrupt received; no further jobs will be started")
        if self.ledger.active_count:
            pids = ", ".join(str(j.pid) for j in self.ledger.active)
            logger.warning(
                f"[LOOP] {self.ledger.active_count} running job(s) continue in the background "
                f"(PIDs {pids}); stop them with 'batsched stop-jobs' or kill them directly"
            )

    def run(self) -> RunSummary:
        """
        Tick until the queue and the active set are both empty.

        Raises
        ------
        DeviceWaitTimeout
            When no GPU frees in time (after draining, if enabled).
        SchedulerInterrupted
            On :meth:`request_stop` or ``KeyboardInterrupt``.
        """
        if self.ledger.active_count:
            logger.info(
                f"[LOOP] Resuming with {self.ledger.active_count} job(s) recorded as active"
            )
        logger.info(
            f"[LOOP] Processing {self.ledger.queued_count} queued window(s) on "
            f"{self.allocator.num_devices} GPU(s), one job per GPU"
        )
        try:
            while True:
                if self._stop_requested:
                    raise SchedulerInterrupted("Dispatch halted by request")
                self.tick()
                if self.ledger.is_idle:
                    break
                self._sleep(self.poll_s)
        except KeyboardInterrupt:
            self._halt()
            raise SchedulerInterrupted("Dispatch halted by keyboard interrupt") from None
        except SchedulerInterrupted:
            self._halt()
            raise
        except DeviceWaitTimeout:
            if self.drain_on_timeout and self.ledger.active_count:
                logger.warning(
                    f"[LOOP] Waiting for {self.ledger.active_count} running job(s) before aborting"
                )
                try:
                    self.drain()
                except (KeyboardInterrupt, SchedulerInterrupted):
                    self._halt()
                    raise SchedulerInterrupted("Interrupted while draining") from None
            self._set_state(LoopState.STOPPED)
            raise
        self._set_state(LoopState.STOPPED)
        logger.info(f"[LOOP] Job queue processing completed. Total jobs started: {self._summary.dispatched}")
        return self._summary
