"""
chainvisor: launches a group of blockchain node processes in dependency
order, captures their output, tracks their liveness and shuts them down
together.
"""

__version__ = "0.1.0"
