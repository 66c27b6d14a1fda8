"""Scheduling loop, run orchestration and reporting."""

from .loop import LoopState, RunSummary, SchedulingLoop, TickReport
from .report import ExecutionStatistics, execution_statistics, progress_percent, terminal_frame
from .run import AutomationResult, open_ledger, resolve_config, run_automation, stop_all_jobs

__all__ = [
    "LoopState",
    "RunSummary",
    "SchedulingLoop",
    "TickReport",
    "ExecutionStatistics",
    "execution_statistics",
    "progress_percent",
    "terminal_frame",
    "AutomationResult",
    "open_ledger",
    "resolve_config",
    "run_automation",
    "stop_all_jobs",
]
