from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from loguru import logger

from batsched.errors import DeviceBusyError, LedgerError
from batsched.ledger.records import (
    ActiveJob,
    QueueEntry,
    RecordFormatError,
    TerminalRecord,
    TerminalStatus,
    decode_active_job,
    decode_queue_entry,
    decode_terminal_record,
    encode_active_job,
    encode_queue_entry,
    encode_terminal_record,
)
from batsched.ledger.store import LedgerStore
from batsched.windows.descriptor import WindowKey

__all__ = ["Ledger"]

T = TypeVar("T")


class Ledger:
    """
    Queued / active / completed / failed bookkeeping for one ``fe/`` tree.

    Each mutating method persists the affected collection(s) through the
    store before returning. Counts are derived from the collections.

    Invariants
    ----------
    * a window identity is in at most one of queued and active;
    * a device is bound to at most one active job;
    * ``retire`` moves a job out of active and writes exactly one terminal
      record.

    Parameters
    ----------
    store : LedgerStore
        Persistence backend; the current content is loaded on construction.
    clock : callable, optional
        Returns the current epoch time (used for durations).
    """

    def __init__(self, store: LedgerStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock
        self._queue: List[QueueEntry] = []
        self._active: List[ActiveJob] = []
        self._completed: List[TerminalRecord] = []
        self._failed: List[TerminalRecord] = []
        self.reload()

    # ---------- loading ----------
    def _load(self, name: str, decode: Callable[[str], T]) -> List[T]:
        out: List[T] = []
        for line in self._store.read_lines(name):
            try:
                out.append(decode(line))
            except RecordFormatError as exc:
                logger.warning(f"[LEDGER] Ignoring malformed {name} record: {exc}")
        return out

    def reload(self) -> None:
        """Re-read every collection from the store and repair interrupted retirements."""
        self._queue = self._load("queue", decode_queue_entry)
        self._active = self._load("active", decode_active_job)
        self._completed = self._load("completed", decode_terminal_record)
        self._failed = self._load("failed", decode_terminal_record)
        self._repair()

    def _repair(self) -> None:
        # retire() writes the terminal record before dropping the active one;
        # an interruption in between leaves both behind.
        retired = {(r.key, r.pid) for r in self._completed + self._failed}
        stale = [j for j in self._active if (j.key, j.pid) in retired]
        if stale:
            for job in stale:
                logger.warning(
                    f"[LEDGER] {job.window.label} (PID {job.pid}) already has a terminal record; "
                    "dropping it from active"
                )
            self._active = [j for j in self._active if (j.key, j.pid) not in retired]
            self._persist_active()
        seen: Dict[int, ActiveJob] = {}
        for job in self._active:
            other = seen.setdefault(job.device, job)
            if other is not job:
                logger.error(
                    f"[LEDGER] GPU {job.device} is recorded for both {other.window.label} "
                    f"and {job.window.label}"
                )

    # ---------- persistence ----------
    def _persist_queue(self) -> None:
        self._store.write_lines("queue", [encode_queue_entry(e) for e in self._queue])

    def _persist_active(self) -> None:
        self._store.write_lines("active", [encode_active_job(j) for j in self._active])

    def _persist_terminal(self, name: str) -> None:
        records = self._completed if name == "completed" else self._failed
        self._store.write_lines(name, [encode_terminal_record(r) for r in records])

    # ---------- views ----------
    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def queued(self) -> Tuple[QueueEntry, ...]:
        return tuple(self._queue)

    @property
    def active(self) -> Tuple[ActiveJob, ...]:
        return tuple(self._active)

    @property
    def completed(self) -> Tuple[TerminalRecord, ...]:
        return tuple(self._completed)

    @property
    def failed(self) -> Tuple[TerminalRecord, ...]:
        return tuple(self._failed)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def completed_count(self) -> int:
        return len(self._completed)

    @property
    def failed_count(self) -> int:
        return len(self._failed)

    @property
    def is_idle(self) -> bool:
        """``True`` once nothing is queued and nothing is running."""
        return not self._queue and not self._active

    def counts(self) -> Dict[str, int]:
        return {
            "queued": self.queued_count,
            "active": self.active_count,
            "completed": self.completed_count,
            "failed": self.failed_count,
        }

    def active_keys(self) -> Set[WindowKey]:
        return {j.key for j in self._active}

    def queued_keys(self) -> Set[WindowKey]:
        return {e.key for e in self._queue}

    def bound_devices(self) -> Dict[int, ActiveJob]:
        return {j.device: j for j in self._active}

    def find_active(self, key: WindowKey) -> Optional[ActiveJob]:
        for job in self._active:
            if job.key == key:
                return job
        return None

    # ---------- pause flag ----------
    @property
    def paused(self) -> bool:
        """Read from the store each time so an external ``pause`` is honoured."""
        return self._store.is_paused()

    def pause(self) -> None:
        self._store.set_paused(True)
        logger.info("[LEDGER] Job queue paused - no new jobs will start")

    def resume(self) -> None:
        self._store.set_paused(False)
        logger.info("[LEDGER] Job queue resumed")

    # ---------- queue ----------
    def _check_enqueue(self, entry: QueueEntry, pending: Set[WindowKey]) -> None:
        if entry.key in pending:
            raise LedgerError(f"{entry.label} is already queued")
        if entry.key in self.active_keys():
            raise LedgerError(f"{entry.label} is already active")

    def enqueue(self, entry: QueueEntry) -> None:
        """
        Append ``entry`` to the back of the queue.

        Raises
        ------
        LedgerError
            If the window is already queued or active.
        """
        self._check_enqueue(entry, self.queued_keys())
        self._queue.append(entry)
        self._persist_queue()

    def enqueue_many(self, entries: Iterable[QueueEntry]) -> List[QueueEntry]:
        """
        Append several entries with a single write.

        Entries already queued or active are not appended.

        Returns
        -------
        list of QueueEntry
            The rejected entries, in input order.
        """
        pending = self.queued_keys()
        rejected: List[QueueEntry] = []
        added = 0
        for entry in entries:
            try:
                self._check_enqueue(entry, pending)
            except LedgerError as exc:
                logger.warning(f"[LEDGER] Not queued: {exc}")
                rejected.append(entry)
                continue
            self._queue.append(entry)
            pending.add(entry.key)
            added += 1
        if added:
            self._persist_queue()
        return rejected

    def dequeue_front(self) -> Optional[QueueEntry]:
        """Remove and return the oldest queued entry (``None`` when empty)."""
        if not self._queue:
            return None
        entry = self._queue.pop(0)
        self._persist_queue()
        return entry

    # ---------- active ----------
    def promote_to_active(self, job: ActiveJob) -> None:
        """
        Record ``job`` as running on ``job.device``.

        Raises
        ------
        DeviceBusyError
            If another active job holds the same device.
        LedgerError
            If the window is already active or still queued.
        """
        holder = self.bound_devices().get(job.device)
        if holder is not None:
            raise DeviceBusyError(
                job.device,
                f"GPU {job.device} is already running {holder.window.label}",
            )
        if job.key in self.active_keys():
            raise LedgerError(f"{job.window.label} is already active")
        if job.key in self.queued_keys():
            raise LedgerError(f"{job.window.label} is still queued; dequeue it first")
        self._active.append(job)
        self._persist_active()
        logger.debug(
            f"[LEDGER] Added active job: {job.window.label} on GPU {job.device} (PID {job.pid})"
        )

    def _remove_active(self, job: ActiveJob) -> bool:
        for i, cur in enumerate(self._active):
            if cur.key == job.key and cur.pid == job.pid:
                del self._active[i]
                return True
        return False

    def retire(
        self,
        job: ActiveJob,
        status: TerminalStatus,
        *,
        finished_at: Optional[float] = None,
    ) -> TerminalRecord:
        """
        Move ``job`` from active to completed (``SUCCESS``) or failed.

        Raises
        ------
        LedgerError
            If ``job`` is not currently active.
        """
        if not any(cur.key == job.key and cur.pid == job.pid for cur in self._active):
            raise LedgerError(f"{job.window.label} (PID {job.pid}) is not active")
        end = self._clock() if finished_at is None else finished_at
        record = TerminalRecord(
            window=job.window,
            device=job.device,
            pid=job.pid,
            duration=job.elapsed(end),
            status=TerminalStatus(status),
        )
        if record.status.is_success:
            self._completed.append(record)
            self._persist_terminal("completed")
        else:
            self._failed.append(record)
            self._persist_terminal("failed")
        self._remove_active(job)
        self._persist_active()
        return record

    def discard_active(self, job: ActiveJob) -> bool:
        """Drop ``job`` from active without a terminal record."""
        removed = self._remove_active(job)
        if removed:
            self._persist_active()
            logger.debug(f"[LEDGER] Removed active job with PID {job.pid}")
        return removed

    # ---------- operator actions ----------
    def requeue_failed(
        self, statuses: Optional[Sequence[TerminalStatus]] = None
    ) -> List[QueueEntry]:
        """
        Move failed windows back to the end of the queue.

        Parameters
        ----------
        statuses : sequence of TerminalStatus, optional
            Only re-queue records with these tags (default: all failed).

        Returns
        -------
        list of QueueEntry
            Entries appended to the queue.
        """
        wanted = set(statuses) if statuses else {TerminalStatus.INCOMPLETE, TerminalStatus.FAILED}
        pending = self.queued_keys() | self.active_keys()
        requeued: List[QueueEntry] = []
        keep: List[TerminalRecord] = []
        for rec in self._failed:
            if rec.status in wanted and rec.key not in pending:
                requeued.append(rec.window)
                pending.add(rec.key)
            elif rec.status in wanted and rec.window in requeued:
                # second record for a window re-queued above
                continue
            else:
                keep.append(rec)
        if not requeued:
            return []
        self._queue.extend(requeued)
        self._persist_queue()
        self._failed = keep
        self._persist_terminal("failed")
        logger.info(f"[LEDGER] Re-queued {len(requeued)} failed window(s)")
        return requeued

    def clear(self, *, keep_terminal: bool = False) -> None:
        """
        Empty the queue and the active list (and terminal records unless kept).

        Active records are forgotten, not killed.
        """
        self._queue = []
        self._active = []
        self._persist_queue()
        self._persist_active()
        if not keep_terminal:
            self._completed = []
            self._failed = []
            self._persist_terminal("completed")
            self._persist_terminal("failed")
        logger.info(
            "[LEDGER] Cleared queue and active jobs"
            + ("" if keep_terminal else " and terminal records")
        )
