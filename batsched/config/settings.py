from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from batsched.config.utils import normalize_optional_path

__all__ = [
    "DeviceSettings",
    "DispatchSettings",
    "WindowLayout",
    "OutcomeSettings",
    "LedgerSettings",
    "LoggingSettings",
    "EnvironmentSettings",
    "SchedulerConfig",
    "resolve_base_dir",
]


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# ----------------------------- GPUs ---------------------------------


class DeviceSettings(_Section):
    """
    GPU pool settings.

    Parameters
    ----------
    count : int, optional
        Number of GPUs to use. ``None`` auto-detects from
        ``CUDA_VISIBLE_DEVICES`` or ``nvidia-smi -L``.
    env_var : str
        Device-selection variable exported to each job.
    max_wait_s : float
        Longest time the loop blocks waiting for a free GPU before the run is
        aborted.
    drain_on_timeout : bool
        When the wait bound is hit, let already running jobs reach their
        terminal record before the error propagates.
    """

    count: Optional[int] = Field(None, description="Number of GPUs (auto-detected when unset)")
    env_var: str = Field("CUDA_VISIBLE_DEVICES", description="Device-selection variable")
    max_wait_s: float = Field(3600.0, description="Maximum wait for a free GPU, in seconds")
    drain_on_timeout: bool = True

    @field_validator("count")
    @classmethod
    def _positive_count(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("devices.count must be positive (leave unset to auto-detect)")
        return v

    @field_validator("max_wait_s")
    @classmethod
    def _positive_wait(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("devices.max_wait_s must be positive")
        return v


class DispatchSettings(_Section):
    poll_interval_s: float = Field(5.0, description="Seconds between scheduling ticks")
    start_grace_s: float = Field(2.0, description="Delay before re-checking a fresh process")

    @field_validator("poll_interval_s", "start_grace_s")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("dispatch intervals cannot be negative")
        return v


# ----------------------------- Windows ---------------------------------


class WindowLayout(_Section):
    """
    Directory layout of the ``fe/`` tree and the files a window must carry.

    Notes
    -----
    ``categories`` maps each component directory to the window-type letters
    scanned inside it. ``stage_template`` is formatted with ``stage`` for each
    entry of ``stages``.
    """

    group_pattern: str = "lig-*"
    categories: Dict[str, Tuple[str, ...]] = Field(
        default_factory=lambda: {"rest": ("m", "n"), "dd": ("e", "v", "f", "w")}
    )
    entry_point: str = "run-local.bash"
    required_inputs: Tuple[str, ...] = ("full.hmr.prmtop", "full.inpcrd")
    stages: Tuple[str, ...] = ("00", "01", "02")
    stage_template: str = "mdin-{stage}"

    @field_validator("categories")
    @classmethod
    def _check_categories(cls, v: Dict[str, Tuple[str, ...]]) -> Dict[str, Tuple[str, ...]]:
        if not v:
            raise ValueError("layout.categories must name at least one component")
        for comp, types in v.items():
            if not types:
                raise ValueError(f"layout.categories[{comp!r}] has no window types")
            for t in types:
                if not t or any(ch.isdigit() for ch in t):
                    raise ValueError(f"invalid window type {t!r} under {comp!r}")
        return v

    @field_validator("stage_template")
    @classmethod
    def _check_template(cls, v: str) -> str:
        if "{stage}" not in v:
            raise ValueError("layout.stage_template must contain '{stage}'")
        return v

    def stage_files(self) -> List[str]:
        return [self.stage_template.format(stage=s) for s in self.stages]


class OutcomeSettings(_Section):
    success_file: str = "md-02.out"
    success_marker: str = "Final Performance"
    log_name: str = "run.log"
    stale_outputs: Tuple[str, ...] = ("md*.out", "md*.rst7", "md*.nc", "mdinfo", "mden", "run.log")

    @field_validator("success_marker")
    @classmethod
    def _non_empty_marker(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("outcome.success_marker cannot be empty")
        return v


# ----------------------------- Bookkeeping ---------------------------------


class LedgerSettings(_Section):
    tracking_dir: str = ".automation_tracking"
    queue_file: str = "job_queue.txt"
    active_file: str = "active_jobs.txt"
    completed_file: str = "completed_jobs.txt"
    failed_file: str = "failed_jobs.txt"
    pause_marker: str = ".paused"
    cleanup_on_completion: bool = False


class LoggingSettings(_Section):
    log_dir: str = "logs"
    main_log: str = "automation.log"
    error_log: str = "errors.log"
    verbose: bool = True


class EnvironmentSettings(_Section):
    """
    Environment handed to jobs and checked before dispatch.

    Parameters
    ----------
    preserved_vars : tuple of str
        Search-path variables re-exported to every job.
    required_executables : tuple of str
        Programs that must be on ``PATH`` before any window is dispatched.
    """

    preserved_vars: Tuple[str, ...] = ("PATH", "LD_LIBRARY_PATH")
    required_executables: Tuple[str, ...] = ("pmemd.cuda",)


# ----------------------------- Top level ---------------------------------


class SchedulerConfig(_Section):
    """
    Immutable configuration threaded through every scheduler component.

    Parameters
    ----------
    base_dir : pathlib.Path, optional
        The ``fe/`` directory holding ``lig-*`` groups. Resolved from the
        working directory by :func:`resolve_base_dir` when left unset.
    """

    base_dir: Optional[Path] = None
    devices: DeviceSettings = Field(default_factory=DeviceSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    layout: WindowLayout = Field(default_factory=WindowLayout)
    outcome: OutcomeSettings = Field(default_factory=OutcomeSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    environment: EnvironmentSettings = Field(default_factory=EnvironmentSettings)

    @field_validator("base_dir", mode="before")
    @classmethod
    def _coerce_base_dir(cls, v):
        return normalize_optional_path(v)

    @model_validator(mode="after")
    def _wait_covers_poll(self) -> "SchedulerConfig":
        if self.devices.max_wait_s < self.dispatch.poll_interval_s:
            raise ValueError(
                "devices.max_wait_s must be at least dispatch.poll_interval_s "
                f"({self.devices.max_wait_s} < {self.dispatch.poll_interval_s})"
            )
        return self

    def with_overrides(
        self,
        *,
        base_dir: Path | None = None,
        num_devices: int | None = None,
        poll_interval_s: float | None = None,
    ) -> "SchedulerConfig":
        """Return a validated copy with command-line overrides applied."""
        data = self.model_dump()
        if base_dir is not None:
            data["base_dir"] = base_dir
        if num_devices is not None:
            data["devices"]["count"] = num_devices
        if poll_interval_s is not None:
            data["dispatch"]["poll_interval_s"] = poll_interval_s
        return SchedulerConfig.model_validate(data)

    def require_base_dir(self) -> Path:
        if self.base_dir is None:
            raise ValueError("base_dir has not been resolved")
        return self.base_dir

    @property
    def tracking_path(self) -> Path:
        return self.require_base_dir() / self.ledger.tracking_dir

    @property
    def log_path(self) -> Path:
        log_dir = Path(self.logging.log_dir)
        return log_dir if log_dir.is_absolute() else self.require_base_dir() / log_dir


def resolve_base_dir(start: Path | str | None = None) -> Path:
    """
    Locate the ``fe/`` directory windows live under.

    Parameters
    ----------
    start : path-like, optional
        Starting directory (defaults to the current working directory).

    Returns
    -------
    pathlib.Path
        ``start`` itself when it is named ``fe``, otherwise ``start/fe``.

    Raises
    ------
    FileNotFoundError
        If neither location exists.
    """
    base = Path(start) if start is not None else Path.cwd()
    base = base.expanduser().resolve()
    if base.name == "fe" and base.is_dir():
        return base
    if (base / "fe").is_dir():
        return base / "fe"
    raise FileNotFoundError(
        f"Not in an fe/ directory and no fe/ subdirectory under {base}; "
        "run from the BAT root (parent of fe/) or from fe/ itself."
    )
