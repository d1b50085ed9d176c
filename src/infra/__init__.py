"""
Infrastructure module - logging and process-wide settings.
"""

from .logging_config import setup_logging, DailyRotatingFileHandler

__all__ = [
    "setup_logging",
    "DailyRotatingFileHandler",
]
