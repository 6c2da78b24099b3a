"""
Logging module for the application.
This module provides functionality to set up console logging and the
SQLite-backed supervisor log history.
"""

from .setup import setup_logging, set_console_level

__all__ = ["setup_logging", "set_console_level"]
