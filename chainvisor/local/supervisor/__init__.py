"""
The Supervisor package.
Launches and supervises a group of long-running child processes.

This package contains the Launcher, which turns process specs into running
processes in dependency order, the Supervisor, which owns their handles for
the rest of the session, and the helper modules for log files, persisted
session state and attached-session shutdown.
"""
from .handle import LifecycleState, ProcessHandle
from .log_router import LogRouter
from .supervisor import Supervisor
from .launcher import Launcher, order_specs

__all__ = ['LifecycleState', 'ProcessHandle', 'LogRouter', 'Supervisor', 'Launcher', 'order_specs']
