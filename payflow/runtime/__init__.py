from .commands import Runtime, bootstrap_dependencies, build_engine, run_command, shutdown
from .logging import setup_logger
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "Runtime",
    "bootstrap_dependencies",
    "build_engine",
    "run_command",
    "setup_logger",
    "shutdown",
]
