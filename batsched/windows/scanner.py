"""Discovery of runnable windows under an ``fe/`` directory.

The tree is expected to look like::

    fe/
      lig-abc/
        rest/m00 m01 ... n00 ...
        dd/e00 ... v00 ... f00 ... w00 ...

Each window directory must carry the entry point, the static inputs and one
staged ``mdin`` file per stage; partially prepared windows are skipped.
"""

from __future__ import annotations

import fnmatch
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator, List, Optional, Sequence, Tuple

from loguru import logger

from batsched.config.settings import WindowLayout
from batsched.errors import StructureError
from batsched.windows.descriptor import WindowDescriptor, parse_window_name

if TYPE_CHECKING:
    from batsched.ledger.ledger import Ledger

__all__ = ["InventoryScanner", "ScanSummary", "queue_windows"]


@dataclass
class ScanSummary:
    """Counts of windows appended to the queue by :func:`queue_windows`."""

    total: int = 0
    by_type: Counter = field(default_factory=Counter)
    groups: List[str] = field(default_factory=list)
    rejected: int = 0

    def add(self, window: WindowDescriptor) -> None:
        self.total += 1
        self.by_type[(window.category, window.subtype)] += 1
        if window.group not in self.groups:
            self.groups.append(window.group)

    def breakdown(self, layout: WindowLayout) -> List[Tuple[str, int]]:
        """Per ``category/type`` counts in layout order, zero rows included."""
        rows = []
        for comp, types in layout.categories.items():
            for t in types:
                rows.append((f"{comp}/{t}*", self.by_type.get((comp, t), 0)))
        return rows


class InventoryScanner:
    """
    Enumerate valid windows in a deterministic order.

    Parameters
    ----------
    layout : WindowLayout
        Naming patterns and required files.
    base_dir : pathlib.Path
        The ``fe/`` directory.
    groups : sequence of str, optional
        Restrict the scan to these group names.
    """

    def __init__(
        self,
        layout: WindowLayout,
        base_dir: Path,
        groups: Optional[Sequence[str]] = None,
    ):
        self.layout = layout
        self.base_dir = Path(base_dir)
        self.groups = list(groups) if groups else None

    # ---------- groups ----------
    def find_groups(self) -> List[Path]:
        """Return group directories sorted by name, honouring the group filter."""
        if not self.base_dir.is_dir():
            raise StructureError(f"Base directory does not exist: {self.base_dir}")
        found = sorted(
            (p for p in self.base_dir.iterdir()
             if p.is_dir() and fnmatch.fnmatchcase(p.name, self.layout.group_pattern)),
            key=lambda p: p.name,
        )
        if self.groups is None:
            return found
        by_name = {p.name: p for p in found}
        selected = []
        for name in self.groups:
            if name in by_name:
                selected.append(by_name[name])
            else:
                logger.warning(f"[SCAN] Group not found: {name}")
        return sorted(selected, key=lambda p: p.name)

    def validate_structure(self) -> List[str]:
        """
        Check that at least one group has a component directory.

        Returns
        -------
        list of str
            Names of usable groups.

        Raises
        ------
        StructureError
            If no group (or no usable group) exists under ``base_dir``.
        """
        groups = self.find_groups()
        if not groups:
            raise StructureError(
                f"No {self.layout.group_pattern} directories found in {self.base_dir}"
            )
        usable = []
        for g in groups:
            if any((g / comp).is_dir() for comp in self.layout.categories):
                usable.append(g.name)
            else:
                comps = ", ".join(f"{c}/" for c in self.layout.categories)
                logger.warning(f"[SCAN] Group {g.name} has none of: {comps}")
        if not usable:
            raise StructureError("No valid group structures found")
        return usable

    # ---------- windows ----------
    def missing_artifacts(self, window_dir: Path) -> List[str]:
        """Names of required files absent from ``window_dir`` (empty when valid)."""
        required = [self.layout.entry_point, *self.layout.required_inputs, *self.layout.stage_files()]
        return [name for name in required if not (window_dir / name).is_file()]

    def _candidates(self, category_dir: Path, subtype: str) -> List[Tuple[int, Path, str]]:
        out = []
        for p in category_dir.iterdir():
            if not p.is_dir():
                continue
            parsed = parse_window_name(p.name)
            if parsed is None or parsed[0] != subtype:
                continue
            out.append((int(parsed[1]), p, parsed[1]))
        out.sort(key=lambda item: (item[0], item[2]))
        return out

    def scan(self) -> Iterator[WindowDescriptor]:
        """
        Lazily yield valid windows.

        Order is group, then category, then window type (all lexicographic),
        then numeric sequence number, so repeated scans of an unchanged tree
        yield identical sequences.
        """
        for group_dir in self.find_groups():
            for category in sorted(self.layout.categories):
                category_dir = group_dir / category
                if not category_dir.is_dir():
                    continue
                for subtype in sorted(self.layout.categories[category]):
                    for _, window_dir, number in self._candidates(category_dir, subtype):
                        missing = self.missing_artifacts(window_dir)
                        if missing:
                            logger.debug(
                                f"[SCAN] Skipping {window_dir}: missing {', '.join(missing)}"
                            )
                            continue
                        yield WindowDescriptor(
                            group=group_dir.name,
                            category=category,
                            subtype=subtype,
                            number=number,
                            path=window_dir.resolve(),
                        )

    def entry_points(self) -> Iterator[Path]:
        """Every entry-point script under the selected groups, valid window or not."""
        for group_dir in self.find_groups():
            yield from sorted(group_dir.rglob(self.layout.entry_point))


def queue_windows(ledger: "Ledger", windows: Iterable[WindowDescriptor]) -> ScanSummary:
    """
    Append one queue entry per window.

    Windows already queued or running are rejected by the ledger and counted
    in :attr:`ScanSummary.rejected`. Windows with a completed or failed record
    are queued again; clear the ledger first when that is not wanted.
    """
    if ledger.queued_count or ledger.completed_count or ledger.failed_count:
        logger.warning(
            f"[SCAN] Ledger is not empty ({ledger.queued_count} queued, "
            f"{ledger.completed_count} completed, {ledger.failed_count} failed); "
            "clear it to start from a fresh queue"
        )
    windows = list(windows)
    rejected = {w.key for w in ledger.enqueue_many(windows)}
    summary = ScanSummary()
    for window in windows:
        if window.key in rejected:
            summary.rejected += 1
        else:
            summary.add(window)
    logger.info(f"[SCAN] Queued {summary.total} windows from {len(summary.groups)} group(s)")
    return summary
