"""Ledger record types and their pipe-delimited text encoding.

Line formats (one record per line)::

    queue     path|group|category|subtype|number
    active    path|group|category|subtype|number|device|pid|start_time
    terminal  path|group|category|subtype|number|device|pid|duration|status
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List

from batsched.windows.descriptor import WindowDescriptor, WindowKey

__all__ = [
    "QueueEntry",
    "ActiveJob",
    "TerminalRecord",
    "TerminalStatus",
    "RecordFormatError",
    "encode_queue_entry",
    "decode_queue_entry",
    "encode_active_job",
    "decode_active_job",
    "encode_terminal_record",
    "decode_terminal_record",
]

SEP = "|"

# A queued window carries no state beyond its identity.
QueueEntry = WindowDescriptor


class TerminalStatus(str, Enum):
    SUCCESS = "SUCCESS"
    INCOMPLETE = "INCOMPLETE"
    FAILED = "FAILED"

    @property
    def is_success(self) -> bool:
        return self is TerminalStatus.SUCCESS


class RecordFormatError(ValueError):
    """A persisted line does not match the expected record layout."""


@dataclass(frozen=True, slots=True)
class ActiveJob:
    """
    A window bound to one GPU.

    Parameters
    ----------
    window : WindowDescriptor
        The dispatched window.
    device : int
        GPU index the job was pinned to.
    pid : int
        Process id of the launched entry point.
    started_at : int
        Launch time, epoch seconds.
    """

    window: WindowDescriptor
    device: int
    pid: int
    started_at: int

    @property
    def key(self) -> WindowKey:
        return self.window.key

    def elapsed(self, now: float) -> int:
        return max(0, int(now) - self.started_at)


@dataclass(frozen=True, slots=True)
class TerminalRecord:
    window: WindowDescriptor
    device: int
    pid: int
    duration: int
    status: TerminalStatus

    @property
    def key(self) -> WindowKey:
        return self.window.key


# ---------- codec ----------
def _window_fields(window: WindowDescriptor) -> List[str]:
    return [str(window.path), window.group, window.category, window.subtype, window.number]


def _split(line: str, n_fields: int, kind: str) -> List[str]:
    parts = line.rstrip("\n").split(SEP)
    if len(parts) != n_fields:
        raise RecordFormatError(f"{kind} record needs {n_fields} fields, got {len(parts)}: {line!r}")
    return parts


def _window_from(parts: List[str]) -> WindowDescriptor:
    path, group, category, subtype, number = parts[:5]
    try:
        return WindowDescriptor(
            group=group, category=category, subtype=subtype, number=number, path=Path(path)
        )
    except ValueError as exc:
        raise RecordFormatError(str(exc)) from exc


def _int_field(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise RecordFormatError(f"{name} must be an integer, got {value!r}") from None


def encode_queue_entry(entry: QueueEntry) -> str:
    return SEP.join(_window_fields(entry))


def decode_queue_entry(line: str) -> QueueEntry:
    return _window_from(_split(line, 5, "queue"))


def encode_active_job(job: ActiveJob) -> str:
    return SEP.join(_window_fields(job.window) + [str(job.device), str(job.pid), str(job.started_at)])


def decode_active_job(line: str) -> ActiveJob:
    parts = _split(line, 8, "active")
    return ActiveJob(
        window=_window_from(parts),
        device=_int_field(parts[5], "device"),
        pid=_int_field(parts[6], "pid"),
        started_at=_int_field(parts[7], "start_time"),
    )


def encode_terminal_record(rec: TerminalRecord) -> str:
    return SEP.join(
        _window_fields(rec.window)
        + [str(rec.device), str(rec.pid), str(rec.duration), rec.status.value]
    )


def decode_terminal_record(line: str) -> TerminalRecord:
    parts = _split(line, 9, "terminal")
    try:
        status = TerminalStatus(parts[8])
    except ValueError:
        raise RecordFormatError(f"unknown status tag {parts[8]!r}") from None
    return TerminalRecord(
        window=_window_from(parts),
        device=_int_field(parts[5], "device"),
        pid=_int_field(parts[6], "pid"),
        duration=_int_field(parts[7], "duration"),
        status=status,
    )
