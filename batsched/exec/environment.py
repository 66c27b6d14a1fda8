from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

__all__ = ["EnvironmentSnapshot", "visible_device_ids", "missing_executables"]


def visible_device_ids(value: Optional[str]) -> Optional[List[str]]:
    """
    Device ids listed in a ``CUDA_VISIBLE_DEVICES``-style value.

    Examples
    --------
    >>> visible_device_ids("2, 3")
    ['2', '3']
    >>> visible_device_ids("-1") is None
    True
    """
    if not value:
        return None
    txt = value.strip()
    if not txt or txt in {"-1", "NoDevFiles"}:
        return None
    ids = [t for t in re.split(r"[,\s]+", txt) if t]
    return ids or None


def missing_executables(names: Iterable[str], path: Optional[str] = None) -> List[str]:
    """Names from ``names`` that are not executable on ``path`` (default: ``$PATH``)."""
    return [name for name in names if shutil.which(name, path=path) is None]


@dataclass(frozen=True)
class EnvironmentSnapshot:
    """
    Environment captured once when the scheduler starts.

    Jobs launched hours later still receive the search paths the scheduler
    was started with, even if the scheduler's own environment has changed.

    Parameters
    ----------
    variables : mapping
        Full copy of the captured environment.
    preserved : tuple of str
        Search-path variables re-exported explicitly (``PATH``,
        ``LD_LIBRARY_PATH``); set to an empty string when absent at capture.
    """

    variables: Mapping[str, str] = field(default_factory=dict)
    preserved: Tuple[str, ...] = ("PATH", "LD_LIBRARY_PATH")

    @classmethod
    def capture(
        cls,
        preserved: Sequence[str] = ("PATH", "LD_LIBRARY_PATH"),
        environ: Optional[Mapping[str, str]] = None,
    ) -> "EnvironmentSnapshot":
        source = os.environ if environ is None else environ
        snap = cls(variables=dict(source), preserved=tuple(preserved))
        logger.debug(
            "[EXEC] Environment preserved for background jobs ("
            + ", ".join(snap.preserved) + ")"
        )
        return snap

    def device_id(self, device: int, env_var: str = "CUDA_VISIBLE_DEVICES") -> str:
        """
        Physical id behind pool index ``device``.

        When the scheduler was started with ``env_var`` listing ids, pool index
        ``i`` maps to the ``i``-th listed id; otherwise the index is the id.

        Raises
        ------
        ValueError
            If ``device`` is beyond the listed ids.
        """
        ids = visible_device_ids(self.variables.get(env_var))
        if ids is None:
            return str(int(device))
        if not 0 <= device < len(ids):
            raise ValueError(f"GPU {device} outside {env_var}={','.join(ids)}")
        return ids[device]

    def for_device(self, device: int, env_var: str = "CUDA_VISIBLE_DEVICES") -> Dict[str, str]:
        """Environment for a job pinned to pool index ``device``."""
        env = dict(self.variables)
        for key in self.preserved:
            env[key] = self.variables.get(key, "")
        env[env_var] = self.device_id(device, env_var)
        return env
