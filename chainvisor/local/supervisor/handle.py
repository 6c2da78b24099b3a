import enum
import signal
import logging
import subprocess
from typing import IO, Any, Dict, Optional

from chainvisor.local.spec import ProcessSpec

log = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    """
    Lifecycle of a launched process.

    STARTING -> RUNNING -> (EXITED | CRASHED | KILLED), or
    STARTING -> FAILED_TO_START.
    """
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    CRASHED = "crashed"
    KILLED = "killed"
    FAILED_TO_START = "failed_to_start"

    @property
    def is_terminal(self) -> bool:
        return self not in (LifecycleState.STARTING, LifecycleState.RUNNING)

    @property
    def is_failure(self) -> bool:
        return self in (LifecycleState.CRASHED, LifecycleState.KILLED, LifecycleState.FAILED_TO_START)


class ProcessHandle:
    """
    Runtime handle to one launched process.

    The handle exclusively owns the parent's end of the process log sink and
    closes it once, when the handle reaches a terminal state. State changes
    are made by the Supervisor while it holds its registry lock.
    """

    def __init__(self, spec: ProcessSpec, started_at: float):
        self._spec = spec
        self.started_at = started_at
        self.running_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self.state = LifecycleState.STARTING
        self.exit_code: Optional[int] = None
        self.error: Optional[str] = None
        self.popen: Optional[subprocess.Popen] = None
        self.sink: Optional[IO[bytes]] = None
        self.create_time: Optional[float] = None
        self.terminate_requested = False
        self.kill_requested = False

    @property
    def spec(self) -> ProcessSpec:
        return self._spec

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def pid(self) -> Optional[int]:
        return self.popen.pid if self.popen else None

    def classify_exit(self, returncode: int) -> LifecycleState:
        """
        Maps an observed exit status to the terminal state it represents.

        A death by SIGTERM counts as EXITED when `shutdown_all` asked for it;
        any other non-zero status is CRASHED.
        """
        if self.kill_requested:
            return LifecycleState.KILLED
        if returncode == 0:
            return LifecycleState.EXITED
        if self.terminate_requested and returncode == -signal.SIGTERM:
            return LifecycleState.EXITED
        return LifecycleState.CRASHED

    def close_sink(self) -> None:
        """Closes the log sink. Safe to call more than once."""
        sink, self.sink = self.sink, None
        if sink is None:
            return
        try:
            sink.close()
        except OSError as e:
            log.warning(f"Failed to close log sink for '{self.name}': {e}")

    def snapshot(self) -> Dict[str, Any]:
        """Returns the JSON-friendly record persisted in the session state file."""
        return {
            "name": self.name,
            "pid": self.pid,
            "create_time": self.create_time,
            "log_path": str(self._spec.log_file),
            "state": self.state.value,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
        }

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.name} pid={self.pid} state={self.state.value}>"
