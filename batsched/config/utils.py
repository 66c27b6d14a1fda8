from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Sequence


_GROUP_SPLIT_RE = re.compile(r"[\s,]+")


def normalize_optional_path(value: Any) -> Path | None:
    """Expand ``~`` and ``$VARS`` in an optional ``base_dir``; empty means unset."""
    if value in (None, ""):
        return None
    return Path(os.path.expanduser(os.path.expandvars(str(value))))


def expand_env_vars(data: Any) -> Any:
    """
    Expand ``${VAR}`` and ``~`` in every string of a loaded scheduler YAML.

    Nested mappings and lists are walked; other scalars pass through.
    """
    def _expand(value: Any) -> Any:
        if isinstance(value, str):
            return os.path.expandvars(os.path.expanduser(value))
        if isinstance(value, Mapping):
            return {k: _expand(v) for k, v in value.items()}
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
            return [_expand(v) for v in value]
        return value

    return _expand(data)


def split_group_names(values: Iterable[str] | str | None) -> List[str]:
    """
    Flatten group selections given as repeated options or space/comma separated strings.

    Examples
    --------
    >>> split_group_names(["lig-fmm lig-afp", "lig-dac"])
    ['lig-fmm', 'lig-afp', 'lig-dac']
    """
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    out: List[str] = []
    for raw in values:
        for token in _GROUP_SPLIT_RE.split(raw.strip()):
            if token and token not in out:
                out.append(token)
    return out
