"""
Helpers for loading and saving scheduler configuration files.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from batsched.config.settings import SchedulerConfig
from batsched.config.utils import expand_env_vars
from batsched.errors import ConfigError

__all__ = ["load_scheduler_config", "dump_scheduler_config"]


def load_scheduler_config(path: Path | str | None = None) -> SchedulerConfig:
    """
    Read a YAML file and return a validated :class:`SchedulerConfig`.

    ``None`` returns the built-in defaults. A relative ``base_dir`` in the file
    is resolved against the file's directory.
    """
    if path is None:
        return SchedulerConfig()
    file_path = Path(path)
    try:
        raw: Dict[str, Any] = yaml.safe_load(file_path.read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read configuration {file_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration {file_path} must be a mapping, got {type(raw).__name__}")
    expanded = expand_env_vars(raw)
    base_dir = expanded.get("base_dir")
    if base_dir and not Path(base_dir).is_absolute():
        expanded["base_dir"] = str((file_path.parent / base_dir).resolve())
    try:
        return SchedulerConfig.model_validate(expanded)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration {file_path}:\n{exc}") from exc


def dump_scheduler_config(cfg: SchedulerConfig, path: Path | str) -> None:
    """Serialize a :class:`SchedulerConfig` to YAML."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(yaml.safe_dump(cfg.model_dump(mode="json"), sort_keys=True))
