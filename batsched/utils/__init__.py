from .logging import configure_logging, reset_logging
from .permissions import fix_all_permissions, make_executable

__all__ = ["configure_logging", "reset_logging", "fix_all_permissions", "make_executable"]
