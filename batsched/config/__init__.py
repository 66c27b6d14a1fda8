"""
Configuration models and loaders for the window scheduler.
"""

from __future__ import annotations

from .io import dump_scheduler_config, load_scheduler_config
from .settings import (
    DeviceSettings,
    DispatchSettings,
    EnvironmentSettings,
    LedgerSettings,
    LoggingSettings,
    OutcomeSettings,
    SchedulerConfig,
    WindowLayout,
    resolve_base_dir,
)

__all__ = [
    "DeviceSettings",
    "DispatchSettings",
    "EnvironmentSettings",
    "LedgerSettings",
    "LoggingSettings",
    "OutcomeSettings",
    "SchedulerConfig",
    "WindowLayout",
    "dump_scheduler_config",
    "load_scheduler_config",
    "resolve_base_dir",
]
