"""
Utilities package for the Conversion Job Orchestrator

Contains logging helpers and configuration loading.
"""

from .logger import setup_logger, get_logger, set_log_context, clear_log_context, LoggerContext

__all__ = [
    "setup_logger",
    "get_logger",
    "set_log_context",
    "clear_log_context",
    "LoggerContext"
]
