"""Persistence backends for the ledger.

A store keeps four named line collections (``queue``, ``active``,
``completed``, ``failed``) plus a presence-only pause marker. It knows nothing
about record contents; :class:`~batsched.ledger.ledger.Ledger` does the
encoding.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Protocol, Sequence

from loguru import logger

from batsched.config.settings import LedgerSettings

__all__ = ["COLLECTIONS", "LedgerStore", "MemoryLedgerStore", "FileLedgerStore"]

COLLECTIONS = ("queue", "active", "completed", "failed")


class LedgerStore(Protocol):
    """Protocol implemented by ledger persistence backends."""

    def read_lines(self, name: str) -> List[str]:
        """Return the non-empty lines of collection ``name`` (missing -> empty)."""
        ...

    def write_lines(self, name: str, lines: Sequence[str]) -> None:
        """Replace collection ``name``; must be durable when it returns."""
        ...

    def is_paused(self) -> bool:
        ...

    def set_paused(self, paused: bool) -> None:
        ...


def _check_name(name: str) -> None:
    if name not in COLLECTIONS:
        raise KeyError(f"unknown ledger collection {name!r}; expected one of {COLLECTIONS}")


class MemoryLedgerStore:
    """In-process store used by tests and dry runs."""

    def __init__(self) -> None:
        self._data: Dict[str, List[str]] = {name: [] for name in COLLECTIONS}
        self._paused = False
        self.writes = 0

    def read_lines(self, name: str) -> List[str]:
        _check_name(name)
        return list(self._data[name])

    def write_lines(self, name: str, lines: Sequence[str]) -> None:
        _check_name(name)
        self._data[name] = [ln for ln in lines if ln]
        self.writes += 1

    def is_paused(self) -> bool:
        return self._paused

    def set_paused(self, paused: bool) -> None:
        self._paused = bool(paused)

    def __repr__(self) -> str:
        return "MemoryLedgerStore()"


class FileLedgerStore:
    """
    Tracking-directory store compatible with external ``wc -l`` style monitors.

    Every write goes to a sibling temporary file which then replaces the
    target with :func:`os.replace`, so a concurrent reader sees either the
    previous or the new collection, never a partial one.

    Parameters
    ----------
    root : pathlib.Path
        Tracking directory (created on demand).
    settings : LedgerSettings, optional
        File names for the collections and the pause marker.
    """

    def __init__(self, root: Path | str, settings: LedgerSettings | None = None):
        self.root = Path(root)
        self.settings = settings or LedgerSettings()
        self._files = {
            "queue": self.settings.queue_file,
            "active": self.settings.active_file,
            "completed": self.settings.completed_file,
            "failed": self.settings.failed_file,
        }

    def path_for(self, name: str) -> Path:
        _check_name(name)
        return self.root / self._files[name]

    @property
    def pause_path(self) -> Path:
        return self.root / self.settings.pause_marker

    def initialize(self) -> None:
        """Create the tracking directory and empty collection files."""
        self.root.mkdir(parents=True, exist_ok=True)
        for name in COLLECTIONS:
            p = self.path_for(name)
            if not p.exists():
                p.touch()
        logger.debug(f"[LEDGER] Tracking directory initialized: {self.root}")

    def read_lines(self, name: str) -> List[str]:
        p = self.path_for(name)
        try:
            text = p.read_text()
        except FileNotFoundError:
            return []
        return [ln for ln in text.splitlines() if ln.strip()]

    def write_lines(self, name: str, lines: Sequence[str]) -> None:
        p = self.path_for(name)
        p.parent.mkdir(parents=True, exist_ok=True)
        payload = "".join(f"{ln}\n" for ln in lines if ln)
        tmp = p.with_name(f".{p.name}.{os.getpid()}.tmp")
        try:
            with open(tmp, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(p)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    def is_paused(self) -> bool:
        return self.pause_path.exists()

    def set_paused(self, paused: bool) -> None:
        if paused:
            self.root.mkdir(parents=True, exist_ok=True)
            self.pause_path.touch()
        else:
            self.pause_path.unlink(missing_ok=True)

    def exists(self) -> bool:
        return self.root.is_dir()

    def remove(self) -> None:
        """Delete the tracking directory (``cleanup_on_completion``)."""
        for name in COLLECTIONS:
            self.path_for(name).unlink(missing_ok=True)
        self.pause_path.unlink(missing_ok=True)
        for leftover in self.root.glob(".*.tmp"):
            leftover.unlink(missing_ok=True)
        try:
            self.root.rmdir()
        except OSError as exc:
            logger.warning(f"[LEDGER] Could not remove {self.root}: {exc}")

    def __repr__(self) -> str:
        return f"FileLedgerStore({str(self.root)!r})"
