"""
Local package for chainvisor.

This package provides the effective configuration, the process spec model
and the supervisor machinery used by the console commands.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
