"""通用工具"""

from .logger import Logger, get_logger, logger

__all__ = ["Logger", "get_logger", "logger"]
