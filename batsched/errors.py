"""Exception hierarchy shared by the scheduler components."""

from __future__ import annotations

__all__ = [
    "SchedulerError",
    "ConfigError",
    "StructureError",
    "DeviceDetectionError",
    "LedgerError",
    "DeviceBusyError",
    "LaunchError",
    "DeviceWaitTimeout",
    "SchedulerInterrupted",
]


class SchedulerError(RuntimeError):
    """Base class for errors raised by :mod:`batsched`."""


class ConfigError(SchedulerError):
    """Invalid or unreadable scheduler configuration."""


class StructureError(SchedulerError):
    """The base directory does not look like an ``fe/`` window tree."""


class DeviceDetectionError(SchedulerError):
    """No GPU devices could be configured or detected."""


class LedgerError(SchedulerError):
    """A ledger mutation would break the queued/active membership invariant."""


class DeviceBusyError(LedgerError):
    """A device was asked to take a second job."""

    def __init__(self, device: int, message: str | None = None):
        self.device = device
        super().__init__(message or f"GPU {device} is already bound to an active job")


class LaunchError(SchedulerError):
    """A window could not be started (missing entry point, permissions, early exit)."""

    def __init__(self, window: str, reason: str):
        self.window = window
        self.reason = reason
        super().__init__(f"{window}: {reason}")


class DeviceWaitTimeout(SchedulerError):
    """No device became free within the configured wait bound."""

    def __init__(self, waited_s: float, timeout_s: float):
        self.waited_s = waited_s
        self.timeout_s = timeout_s
        super().__init__(f"No GPU became available after {waited_s:.0f}s (limit {timeout_s:.0f}s)")


class SchedulerInterrupted(SchedulerError):
    """Dispatch was halted by the operator; launched jobs keep running."""

    exit_code = 130
