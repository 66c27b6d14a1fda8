"""Execution layer: GPU allocation and process supervision."""

from .devices import DeviceAllocator, detect_num_devices, parse_visible_devices
from .environment import EnvironmentSnapshot, missing_executables, visible_device_ids
from .supervisor import PidHandle, PopenHandle, ProcessHandle, ProcessSupervisor, classify_window

__all__ = [
    "DeviceAllocator",
    "detect_num_devices",
    "parse_visible_devices",
    "EnvironmentSnapshot",
    "missing_executables",
    "visible_device_ids",
    "PidHandle",
    "PopenHandle",
    "ProcessHandle",
    "ProcessSupervisor",
    "classify_window",
]
