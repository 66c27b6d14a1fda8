"""GPU allocation with strict one-job-per-device enforcement.

The allocator keeps no bookkeeping of its own: which device is busy is read
from the ledger's active collection each time, so the two cannot disagree.
"""

from __future__ import annotations

import os
import subprocess
import time
from typing import Callable, Dict, List, Optional

from loguru import logger

from batsched.errors import DeviceBusyError, DeviceDetectionError, DeviceWaitTimeout
from batsched.exec.environment import visible_device_ids
from batsched.ledger.ledger import Ledger
from batsched.ledger.records import ActiveJob

__all__ = ["DeviceAllocator", "detect_num_devices", "parse_visible_devices"]


def parse_visible_devices(value: Optional[str]) -> Optional[int]:
    """
    Count devices listed in a ``CUDA_VISIBLE_DEVICES``-style value.

    Examples
    --------
    >>> parse_visible_devices("0,1,3")
    3
    >>> parse_visible_devices("") is None
    True
    """
    ids = visible_device_ids(value)
    return len(ids) if ids else None


def _count_nvidia_smi() -> int:
    try:
        out = subprocess.check_output(
            ["nvidia-smi", "-L"], text=True, stderr=subprocess.DEVNULL
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.debug(f"[GPU] nvidia-smi unavailable: {exc}")
        return 0
    return sum(1 for ln in out.splitlines() if ln.strip().startswith("GPU"))


def detect_num_devices(configured: Optional[int] = None, env_var: str = "CUDA_VISIBLE_DEVICES") -> int:
    """
    Resolve the size of the GPU pool.

    Parameters
    ----------
    configured : int, optional
        Explicit device count; wins when given, but may not exceed the ids
        listed in ``env_var``.
    env_var : str
        Device-selection variable consulted before ``nvidia-smi``.

    Raises
    ------
    DeviceDetectionError
        If no device can be found.
    """
    listed = visible_device_ids(os.environ.get(env_var))
    if configured is not None:
        if configured <= 0:
            raise DeviceDetectionError(f"Configured GPU count must be positive, got {configured}")
        if listed and configured > len(listed):
            raise DeviceDetectionError(
                f"Configured GPU count {configured} exceeds the {len(listed)} GPU(s) "
                f"listed in {env_var}={','.join(listed)}"
            )
        logger.debug(f"[GPU] Using configured GPU count: {configured}")
        return configured
    if listed:
        logger.info(f"[GPU] Detected {len(listed)} GPUs from {env_var}: {','.join(listed)}")
        return len(listed)
    n = _count_nvidia_smi()
    if n <= 0:
        raise DeviceDetectionError("No GPUs detected (set devices.count or --devices)")
    logger.info(f"[GPU] Detected {n} GPUs")
    return n


class DeviceAllocator:
    """
    Hand out GPU indices ``0 .. num_devices-1`` to at most one job each.

    Parameters
    ----------
    num_devices : int
        Pool size, fixed for the lifetime of the allocator.
    ledger : Ledger
        Source of truth for which devices are bound.
    poll_s : float
        Interval used by :meth:`wait_for_free_device`.
    sleep, clock : callable, optional
        Injected for tests; default to :func:`time.sleep` / :func:`time.monotonic`.
    """

    def __init__(
        self,
        num_devices: int,
        ledger: Ledger,
        *,
        poll_s: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if num_devices <= 0:
            raise ValueError("num_devices must be positive")
        self.num_devices = int(num_devices)
        self.ledger = ledger
        self.poll_s = float(poll_s)
        self._sleep = sleep
        self._clock = clock

    # ---------- queries ----------
    def bindings(self) -> Dict[int, Optional[ActiveJob]]:
        bound = self.ledger.bound_devices()
        return {gpu: bound.get(gpu) for gpu in range(self.num_devices)}

    def is_free(self, device: int) -> bool:
        self._check_range(device)
        return device not in self.ledger.bound_devices()

    def free_device(self) -> Optional[int]:
        """Lowest-numbered device with no bound job, or ``None`` if all are busy."""
        bound = self.ledger.bound_devices()
        for gpu in range(self.num_devices):
            if gpu not in bound:
                return gpu
        return None

    def free_devices(self) -> List[int]:
        bound = self.ledger.bound_devices()
        return [gpu for gpu in range(self.num_devices) if gpu not in bound]

    def max_jobs_per_device(self) -> int:
        """Largest number of active records sharing one device (1 when healthy)."""
        counts: Dict[int, int] = {}
        for job in self.ledger.active:
            counts[job.device] = counts.get(job.device, 0) + 1
        return max(counts.values(), default=0)

    def _check_range(self, device: int) -> None:
        if not 0 <= device < self.num_devices:
            raise ValueError(f"GPU {device} outside pool of {self.num_devices}")

    # ---------- mutation ----------
    def bind(self, device: int, job: ActiveJob) -> None:
        """
        Bind ``job`` to ``device`` by promoting it to active in the ledger.

        Raises
        ------
        DeviceBusyError
            If ``device`` already runs a job.
        ValueError
            If ``device`` is outside the pool or differs from ``job.device``.
        """
        self._check_range(device)
        if job.device != device:
            raise ValueError(f"job is pinned to GPU {job.device}, not GPU {device}")
        if not self.is_free(device):
            raise DeviceBusyError(device)
        self.ledger.promote_to_active(job)

    def release(self, device: int) -> Optional[ActiveJob]:
        """
        Free ``device``; returns the job that held it.

        A no-op returning ``None`` when the device is already free, which is
        the case right after the ledger retired its job.
        """
        self._check_range(device)
        job = self.ledger.bound_devices().get(device)
        if job is None:
            return None
        self.ledger.discard_active(job)
        logger.debug(f"[GPU] Released GPU {device} from {job.window.label}")
        return job

    # ---------- waiting ----------
    def wait_for_free_device(
        self,
        timeout: float,
        on_poll: Optional[Callable[[], object]] = None,
    ) -> int:
        """
        Block until a device is free.

        Parameters
        ----------
        timeout : float
            Upper bound on the wait, in seconds.
        on_poll : callable, optional
            Invoked before every check; the scheduling loop passes its
            completion reconciliation here so finished jobs free their device.

        Returns
        -------
        int
            The lowest free device.

        Raises
        ------
        DeviceWaitTimeout
            If no device frees up within ``timeout``.
        """
        start = self._clock()
        while True:
            if on_poll is not None:
                on_poll()
            gpu = self.free_device()
            if gpu is not None:
                return gpu
            waited = self._clock() - start
            if waited >= timeout:
                logger.error(f"[GPU] No GPU became available after {waited:.0f}s")
                raise DeviceWaitTimeout(waited, timeout)
            logger.debug(
                f"[GPU] all {self.num_devices} GPUs busy - waiting {self.poll_s}s "
                f"({waited:.0f}/{timeout:.0f}s)"
            )
            self._sleep(self.poll_s)
