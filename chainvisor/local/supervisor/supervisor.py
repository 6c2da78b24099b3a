import time
import logging
import subprocess
import threading
from pathlib import Path
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from chainvisor.local.config import effective_settings as config
from chainvisor.local.errors import LogSinkError, ShutdownRequested, SupervisorError, TimedOut, UnknownProcess
from chainvisor.local.supervisor import persistence, process_utils
from chainvisor.local.supervisor.handle import LifecycleState, ProcessHandle

log = logging.getLogger(__name__)


class Supervisor:
    """
    Owns the handles of one supervised session.

    The registry maps process names to handles in launch order. The Launcher
    inserts handles through `register`; every other state change happens here,
    under a single condition variable, so liveness polling, shutdown and
    status queries may run from different threads.

    Process crashes are recorded and reported through `status` and
    `wait_any`; they are never raised. Only contract violations such as
    asking for an unknown process name raise.
    """

    def __init__(self, state_path: Optional[Path] = None, poll_interval: Optional[float] = None,
                 startup_timeout: Optional[float] = None) -> None:
        """
        :param state_path: Session state file to keep current, or None to keep no state on disk.
        :param poll_interval: Seconds between liveness polls.
        :param startup_timeout: Max seconds `shutdown_all` waits for processes still starting.
        """
        self.state_path = state_path
        self.poll_interval = poll_interval if poll_interval is not None else config.SUPERVISOR_POLL_INTERVAL
        self.startup_timeout = startup_timeout if startup_timeout is not None else config.STARTUP_TIMEOUT
        self.started_at = time.time()
        self.shutdown_requested = threading.Event()

        self._registry: Dict[str, ProcessHandle] = {}
        self._cond = threading.Condition()
        self._transitions: Deque[Tuple[str, LifecycleState]] = deque()
        self._launch_complete = False
        self._detached = False
        self._stop_monitor = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

    #* --- Registry mutation (Launcher side) ---
    def register(self, handle: ProcessHandle) -> None:
        """
        Inserts a freshly created handle in STARTING state.

        :raises ShutdownRequested: If `shutdown_all` has already been called.
        :raises SupervisorError: If a live handle with the same name exists.
        """
        with self._cond:
            if self.shutdown_requested.is_set():
                raise ShutdownRequested(f"Shutdown in progress; not starting '{handle.name}'")
            existing = self._registry.get(handle.name)
            if existing is not None and not existing.state.is_terminal:
                raise SupervisorError(f"A process named '{handle.name}' is already live")
            self._registry.pop(handle.name, None)
            self._registry[handle.name] = handle
            self._launch_complete = False
            self._persist_locked()
            self._cond.notify_all()
        self._ensure_monitor()

    def mark_running(self, handle: ProcessHandle) -> None:
        with self._cond:
            if handle.state is not LifecycleState.STARTING:
                return
            handle.state = LifecycleState.RUNNING
            handle.running_at = time.time()
            handle.create_time = process_utils.get_create_time(handle.pid)
            log.info(f"'{handle.name}' is running (PID {handle.pid}).")
            self._persist_locked()
            self._cond.notify_all()

    def mark_failed_to_start(self, handle: ProcessHandle, reason: str, exit_code: Optional[int] = None) -> None:
        with self._cond:
            handle.error = reason
            self._finalize_locked(handle, LifecycleState.FAILED_TO_START, exit_code)

    def finish_launch(self) -> None:
        """Called by the Launcher once the whole batch has been processed."""
        with self._cond:
            self._launch_complete = True
            self._maybe_cleanup_locked()
            self._cond.notify_all()

    #* --- Queries ---
    def get(self, name: str) -> ProcessHandle:
        with self._cond:
            try:
                return self._registry[name]
            except KeyError:
                raise UnknownProcess(name) from None

    def state_of(self, name: str) -> LifecycleState:
        return self.get(name).state

    def exit_code(self, name: str) -> Optional[int]:
        return self.get(name).exit_code

    def names(self) -> List[str]:
        with self._cond:
            return list(self._registry)

    def status(self) -> Dict[str, LifecycleState]:
        """Non-blocking snapshot of every process state, in launch order."""
        with self._cond:
            self._poll_locked()
            return {name: handle.state for name, handle in self._registry.items()}

    def summary(self) -> List[Dict[str, object]]:
        """Rows for the per-process report: name, pid, state, exit code, error, log."""
        with self._cond:
            self._poll_locked()
            return [
                {
                    "name": h.name,
                    "pid": h.pid,
                    "state": h.state,
                    "exit_code": h.exit_code,
                    "error": h.error,
                    "log_path": str(h.spec.log_file),
                }
                for h in self._registry.values()
            ]

    def failure_count(self) -> int:
        return sum(1 for state in self.status().values() if state.is_failure)

    #* --- Waiting ---
    def wait_any(self, timeout: Optional[float] = None) -> Optional[Tuple[str, LifecycleState]]:
        """
        Blocks until a process leaves RUNNING and reports that transition.

        Each transition is reported exactly once, oldest first, so repeated
        calls walk through the exits in the order they were observed.

        :param timeout: Max seconds to wait, None to wait forever.
        :return: (name, terminal state), or None if nothing is live and nothing is pending.
        :raises TimedOut: If the timeout elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._poll_locked()
                if self._transitions:
                    return self._transitions.popleft()
                if not self._any_live_locked():
                    return None
                self._wait_locked(deadline, "a process to exit")

    def wait_all(self, timeout: Optional[float] = None) -> Dict[str, LifecycleState]:
        """
        Blocks until every process is in a terminal state.

        :raises TimedOut: If the timeout elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._poll_locked()
                if not self._any_live_locked():
                    return {name: handle.state for name, handle in self._registry.items()}
                self._wait_locked(deadline, "all processes to exit")

    def _wait_locked(self, deadline: Optional[float], what: str) -> None:
        if deadline is None:
            self._cond.wait(self.poll_interval)
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimedOut(f"Timed out waiting for {what}")
        self._cond.wait(min(remaining, self.poll_interval))

    #* --- Shutdown ---
    def shutdown_all(self, grace: Optional[float] = None) -> None:
        """
        Stops every running process: graceful first, forced after `grace` seconds.

        Processes still starting are allowed to finish startup first. Running
        processes receive SIGTERM in reverse launch order so dependents stop
        before what they depend on; survivors of the grace period are killed
        and marked KILLED. From the moment this is called, `register` refuses
        new handles, so no process can start behind the shutdown. Calling
        this again once everything is terminal does nothing.

        :param grace: Seconds to wait for graceful exits.
        """
        grace = config.GRACEFUL_SHUTDOWN_TIMEOUT if grace is None else grace

        with self._cond:
            self.shutdown_requested.set()
            self._await_startups_locked()
            self._poll_locked()
            targets = [h for h in reversed(list(self._registry.values())) if h.state is LifecycleState.RUNNING]
            for handle in targets:
                handle.terminate_requested = True

        if not targets:
            log.debug("No running processes to stop.")
            with self._cond:
                self._maybe_cleanup_locked()
            return

        log.info(f"Initiating graceful shutdown for {len(targets)} processes (grace {grace}s)...")
        for handle in targets:
            log.debug(f"Sending SIGTERM to '{handle.name}' (PID {handle.pid})")
            process_utils.signal_tree(handle.pid)

        deadline = time.monotonic() + grace
        with self._cond:
            while True:
                self._poll_locked()
                alive = [h for h in targets if h.state is LifecycleState.RUNNING]
                remaining = deadline - time.monotonic()
                if not alive or remaining <= 0:
                    break
                self._cond.wait(min(remaining, self.poll_interval))
            for handle in alive:
                handle.kill_requested = True

        if alive:
            log.warning(f"{len(alive)} processes did not terminate gracefully. Forcing shutdown...")
        for handle in alive:
            log.warning(f"Killing stubborn process '{handle.name}' (PID {handle.pid}).")
            process_utils.signal_tree(handle.pid, force=True)
        for handle in alive:
            try:
                handle.popen.wait(timeout=5)
            except subprocess.TimeoutExpired as e:
                log.error(f"'{handle.name}' (PID {handle.pid}) did not die after SIGKILL: {e}")

        with self._cond:
            for handle in alive:
                self._finalize_locked(handle, LifecycleState.KILLED, handle.popen.poll())
            self._maybe_cleanup_locked()
        log.info("Shutdown sequence completed.")

    def _await_startups_locked(self) -> None:
        deadline = time.monotonic() + self.startup_timeout
        while any(h.state is LifecycleState.STARTING for h in self._registry.values()):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.warning("Processes still starting after the startup timeout; continuing shutdown.")
                return
            self._cond.wait(min(remaining, self.poll_interval))

    def release(self, name: str) -> ProcessHandle:
        """
        Removes a terminated process from the registry.

        :raises UnknownProcess: If no process has this name.
        :raises SupervisorError: If the process has not terminated yet.
        """
        with self._cond:
            handle = self._registry.get(name)
            if handle is None:
                raise UnknownProcess(name)
            if not handle.state.is_terminal:
                raise SupervisorError(f"Cannot release '{name}' while it is {handle.state.value}")
            del self._registry[name]
            self._persist_locked()
            return handle

    def detach(self) -> None:
        """
        Stops supervising without touching the children.

        Used when the launching process exits and leaves the children running
        in the background; the state file stays behind for `status` and `stop`.
        """
        self._stop_monitor.set()
        with self._cond:
            self._detached = True
            self._persist_locked()
            for handle in self._registry.values():
                handle.close_sink()
        self._join_monitor()

    def close(self) -> None:
        """Stops the monitor thread."""
        self._stop_monitor.set()
        self._join_monitor()

    #* --- Internal state handling ---
    def _any_live_locked(self) -> bool:
        return any(not h.state.is_terminal for h in self._registry.values())

    def _poll_locked(self) -> None:
        if self._detached:
            return
        for handle in list(self._registry.values()):
            if handle.state is not LifecycleState.RUNNING or handle.popen is None:
                continue
            code = handle.popen.poll()
            if code is not None:
                self._finalize_locked(handle, handle.classify_exit(code), code)

    def _finalize_locked(self, handle: ProcessHandle, state: LifecycleState, exit_code: Optional[int]) -> bool:
        if handle.state.is_terminal:
            return False
        previous = handle.state
        handle.state = state
        handle.exit_code = exit_code
        handle.ended_at = time.time()
        handle.close_sink()

        if previous is LifecycleState.RUNNING:
            self._transitions.append((handle.name, state))
        if state is LifecycleState.CRASHED:
            log.warning(f"'{handle.name}' (PID {handle.pid}) crashed with exit code {exit_code}.")
        elif state is LifecycleState.KILLED:
            log.warning(f"'{handle.name}' (PID {handle.pid}) was killed.")
        elif state is LifecycleState.FAILED_TO_START:
            log.error(f"'{handle.name}' failed to start: {handle.error}")
        else:
            log.info(f"'{handle.name}' (PID {handle.pid}) exited with code {exit_code}.")

        self._persist_locked()
        self._maybe_cleanup_locked()
        self._cond.notify_all()
        return True

    def _persist_locked(self) -> None:
        if self.state_path is None:
            return
        try:
            persistence.write_state_file(self.state_path, (h.snapshot() for h in self._registry.values()),
                                         self.started_at, detached=self._detached)
        except LogSinkError as e:
            log.error(str(e))

    def _maybe_cleanup_locked(self) -> None:
        if self.state_path is None or self._detached or not self._launch_complete:
            return
        if self._registry and self._any_live_locked():
            return
        persistence.remove_state_file(self.state_path)
        persistence.clear_shutdown_signal(self.state_path)

    #* --- Background monitor ---
    def _ensure_monitor(self) -> None:
        if self._monitor_thread is not None or self._stop_monitor.is_set():
            return
        self._monitor_thread = threading.Thread(target=self._monitor_loop, daemon=True, name="SupervisorMonitorThread")
        self._monitor_thread.start()

    def _monitor_loop(self) -> None:
        while not self._stop_monitor.wait(self.poll_interval):
            try:
                with self._cond:
                    self._poll_locked()
            except Exception as e:
                log.error(f"Error while polling supervised processes: {e}", exc_info=True)

    def _join_monitor(self) -> None:
        thread = self._monitor_thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=max(1.0, self.poll_interval * 4))
