"""GPU window scheduler for BAT-style free-energy calculations"""

from ._version import __version__

__author__ = """batsched developers"""

from loguru import logger
import sys

from .config import SchedulerConfig, load_scheduler_config
from .errors import SchedulerError
from .orchestrate import run_automation

logger.remove()
logger_format = ('{level} | <level>{message}</level> ')
logger.add(sys.stderr, format=logger_format, level="INFO")

__all__ = [
    "__version__",
    "SchedulerConfig",
    "SchedulerError",
    "load_scheduler_config",
    "run_automation",
]
