from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Iterable, Tuple

from loguru import logger

__all__ = ["make_executable", "fix_all_permissions"]

_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


def make_executable(path: Path) -> bool:
    """Add execute bits to ``path``; ``True`` if the mode changed."""
    path = Path(path)
    if os.access(path, os.X_OK):
        return False
    path.chmod(path.stat().st_mode | _EXEC_BITS)
    return True


def fix_all_permissions(scripts: Iterable[Path]) -> Tuple[int, int]:
    """
    Make every entry-point script executable ahead of dispatch.

    Returns
    -------
    (fixed, failed) : tuple of int
    """
    fixed = failed = 0
    for script in scripts:
        try:
            if make_executable(script):
                fixed += 1
        except OSError as exc:
            failed += 1
            logger.warning(f"[EXEC] Could not fix permissions on {script}: {exc}")
    logger.info(f"[EXEC] Fixed permissions on {fixed} script(s)" + (f", {failed} failed" if failed else ""))
    return fixed, failed
