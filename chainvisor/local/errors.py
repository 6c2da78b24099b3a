from typing import Iterable, List


class SupervisorError(Exception):
    """Base class for all launcher and supervisor errors."""


class ConfigError(SupervisorError):
    """A process batch file could not be read or parsed."""


class InvalidSpec(SupervisorError):
    """
    One or more process specs are malformed.

    Carries every problem found in the batch so the caller can report them
    all at once instead of fixing them one by one.
    """

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "invalid process spec")


class CyclicDependency(SupervisorError):
    """The start-after graph of a batch contains a cycle."""

    def __init__(self, cycle: Iterable[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Cyclic start-after dependency between: {', '.join(self.cycle)}")


class LogSinkError(SupervisorError, OSError):
    """A log file or state file could not be created or written."""


class FailedToStart(SupervisorError):
    """The OS refused to start a process, or it exited before it was confirmed running."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"'{name}' failed to start: {reason}")


class TimedOut(SupervisorError):
    """A wait operation exceeded its deadline."""


class UnknownProcess(SupervisorError, KeyError):
    """An operation named a process that is not in the registry."""

    def __str__(self) -> str:
        return f"Unknown process name: {self.args[0]!r}" if self.args else "Unknown process name"


class ShutdownRequested(SupervisorError):
    """A process was offered to a Supervisor that is already shutting down."""
