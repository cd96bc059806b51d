"""
Logging module for the application.
This module sets up console logging and the in-memory per-command log store.
"""

from .handler import CommandLogStore
from .setup import command_logger, process_logger, setup_logging

__all__ = ["CommandLogStore", "command_logger", "process_logger", "setup_logging"]
