"""
Console commands for chainvisor: the command map and the handlers behind it.
"""
from .process import EXIT, execute_command

__all__ = ["EXIT", "execute_command"]
