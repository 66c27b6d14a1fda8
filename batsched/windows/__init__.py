from .descriptor import WindowDescriptor, WindowKey, parse_window_name
from .scanner import InventoryScanner, ScanSummary, queue_windows

__all__ = [
    "WindowDescriptor",
    "WindowKey",
    "parse_window_name",
    "InventoryScanner",
    "ScanSummary",
    "queue_windows",
]
