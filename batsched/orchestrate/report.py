"""Tabular views of the ledger for the CLI and the end-of-run summary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import pandas as pd

from batsched.ledger.ledger import Ledger
from batsched.ledger.records import TerminalRecord

__all__ = [
    "ExecutionStatistics",
    "terminal_frame",
    "active_frame",
    "execution_statistics",
    "progress_percent",
]

_TERMINAL_COLUMNS = [
    "group",
    "category",
    "subtype",
    "number",
    "device",
    "pid",
    "duration",
    "status",
    "path",
]


@dataclass(frozen=True)
class ExecutionStatistics:
    completed: int
    failed: int
    success_rate: float
    avg_duration: Optional[float]
    min_duration: Optional[int]
    max_duration: Optional[int]

    @property
    def total(self) -> int:
        return self.completed + self.failed

    def as_dict(self) -> Dict[str, object]:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "avg_duration": self.avg_duration,
            "min_duration": self.min_duration,
            "max_duration": self.max_duration,
        }


def _terminal_row(rec: TerminalRecord) -> Dict[str, object]:
    w = rec.window
    return {
        "group": w.group,
        "category": w.category,
        "subtype": w.subtype,
        "number": w.number,
        "device": rec.device,
        "pid": rec.pid,
        "duration": rec.duration,
        "status": rec.status.value,
        "path": str(w.path),
    }


def terminal_frame(records: Iterable[TerminalRecord]) -> pd.DataFrame:
    """One row per terminal record, sorted by window identity."""
    rows = [_terminal_row(r) for r in records]
    df = pd.DataFrame(rows, columns=_TERMINAL_COLUMNS)
    if df.empty:
        return df
    df = df.assign(_n=df["number"].astype(int))
    return (
        df.sort_values(["group", "category", "subtype", "_n"], kind="stable")
        .drop(columns="_n")
        .reset_index(drop=True)
    )


def active_frame(ledger: Ledger, now: float) -> pd.DataFrame:
    """Running jobs with their elapsed time in seconds."""
    rows = [
        {
            "device": j.device,
            "window": j.window.label,
            "pid": j.pid,
            "elapsed": j.elapsed(now),
        }
        for j in ledger.active
    ]
    df = pd.DataFrame(rows, columns=["device", "window", "pid", "elapsed"])
    return df.sort_values("device").reset_index(drop=True) if not df.empty else df


def execution_statistics(ledger: Ledger) -> ExecutionStatistics:
    """
    Success rate and duration spread over every terminal record.

    Durations are taken from completed jobs only.
    """
    completed = ledger.completed_count
    failed = ledger.failed_count
    total = completed + failed
    rate = round(100.0 * completed / total, 1) if total else 0.0
    durations = pd.Series([r.duration for r in ledger.completed], dtype="int64")
    if durations.empty:
        return ExecutionStatistics(completed, failed, rate, None, None, None)
    return ExecutionStatistics(
        completed=completed,
        failed=failed,
        success_rate=rate,
        avg_duration=round(float(durations.mean()), 1),
        min_duration=int(durations.min()),
        max_duration=int(durations.max()),
    )


def progress_percent(ledger: Ledger) -> float:
    """Share of known windows that reached a terminal record."""
    done = ledger.completed_count + ledger.failed_count
    total = done + ledger.active_count + ledger.queued_count
    return round(100.0 * done / total, 1) if total else 0.0
