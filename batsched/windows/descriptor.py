from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

__all__ = ["WindowDescriptor", "WindowKey", "parse_window_name"]

WindowKey = Tuple[str, str, str, str]

_WINDOW_NAME_RE = re.compile(r"^(?P<type>[A-Za-z_]+?)(?P<num>\d+)$")


def parse_window_name(name: str) -> Optional[Tuple[str, str]]:
    """
    Split a window directory name into ``(window_type, number)``.

    Examples
    --------
    >>> parse_window_name("m00")
    ('m', '00')
    >>> parse_window_name("equil") is None
    True
    """
    m = _WINDOW_NAME_RE.match(name)
    if not m:
        return None
    return m.group("type"), m.group("num")


@dataclass(frozen=True, slots=True)
class WindowDescriptor:
    """
    Identity of one simulation window.

    Parameters
    ----------
    group : str
        Ligand directory name (e.g. ``"lig-abc"``).
    category : str
        Component directory the window sits under (``"rest"`` or ``"dd"``).
    subtype : str
        Window type letter (``"m"``, ``"n"``, ``"e"``, ...).
    number : str
        Sequence number as spelled on disk (``"00"``), kept as text so records
        round-trip exactly.
    path : pathlib.Path
        Window directory.
    """

    group: str
    category: str
    subtype: str
    number: str
    path: Path

    def __post_init__(self) -> None:
        if not self.number.isdigit():
            raise ValueError(f"window number must be digits, got {self.number!r}")
        for name in ("group", "category", "subtype"):
            if "|" in getattr(self, name):
                raise ValueError(f"{name} may not contain '|': {getattr(self, name)!r}")
        if "|" in str(self.path):
            raise ValueError(f"window path may not contain '|': {self.path}")
        object.__setattr__(self, "path", Path(self.path))

    @property
    def key(self) -> WindowKey:
        return (self.group, self.category, self.subtype, self.number)

    @property
    def index(self) -> int:
        return int(self.number)

    @property
    def label(self) -> str:
        """Short display name, e.g. ``lig-abc/rest/m00``."""
        return f"{self.group}/{self.category}/{self.subtype}{self.number}"

    def sort_key(self) -> Tuple[str, str, str, int, str]:
        return (self.group, self.category, self.subtype, self.index, self.number)

    @classmethod
    def from_path(cls, path: Path | str) -> "WindowDescriptor":
        """Build a descriptor from ``.../<group>/<category>/<type><num>``."""
        p = Path(path)
        parsed = parse_window_name(p.name)
        if parsed is None:
            raise ValueError(f"not a window directory name: {p.name!r}")
        subtype, number = parsed
        return cls(
            group=p.parent.parent.name,
            category=p.parent.name,
            subtype=subtype,
            number=number,
            path=p,
        )
