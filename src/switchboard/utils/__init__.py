"""Process-level helpers shared by the engine."""

from .logging import get_log_path, get_logger, setup_logging

__all__ = ["setup_logging", "get_logger", "get_log_path"]
