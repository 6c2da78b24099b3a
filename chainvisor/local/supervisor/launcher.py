import time
import logging
from collections import deque
from typing import Dict, List, Optional, Sequence, Tuple

from chainvisor.local.config import effective_settings as config
from chainvisor.local.errors import CyclicDependency, FailedToStart, LogSinkError, ShutdownRequested
from chainvisor.local.spec import ProcessSpec, resolve_executable, validate_batch
from chainvisor.local.supervisor import process_utils
from chainvisor.local.supervisor.handle import LifecycleState, ProcessHandle
from chainvisor.local.supervisor.log_router import LogRouter
from chainvisor.local.supervisor.supervisor import Supervisor

log = logging.getLogger(__name__)


def order_specs(specs: Sequence[ProcessSpec]) -> List[ProcessSpec]:
    """
    Orders a batch so every spec comes after its start-after dependency.

    Specs without an ordering constraint keep their relative input order.

    :raises CyclicDependency: If the start-after links form a cycle.
    """
    by_name = {spec.name: spec for spec in specs}
    dependents: Dict[str, List[str]] = {spec.name: [] for spec in specs}
    for spec in specs:
        if spec.start_after is not None:
            dependents[spec.start_after].append(spec.name)

    ready = deque(spec.name for spec in specs if spec.start_after is None)
    ordered: List[ProcessSpec] = []
    while ready:
        name = ready.popleft()
        ordered.append(by_name[name])
        ready.extend(dependents[name])

    if len(ordered) < len(specs):
        placed = {spec.name for spec in ordered}
        raise CyclicDependency(_find_cycle(by_name, [s.name for s in specs if s.name not in placed]))
    return ordered


def _find_cycle(by_name: Dict[str, ProcessSpec], unplaced: List[str]) -> List[str]:
    """Follows start-after links from an unplaced spec until a name repeats."""
    path: List[str] = []
    name: Optional[str] = unplaced[0]
    while name is not None and name not in path:
        path.append(name)
        name = by_name[name].start_after
    return path[path.index(name):] if name is not None else unplaced


class Launcher:
    """
    Turns a batch of ProcessSpecs into running processes.

    Starts are issued one at a time in dependency order. A spec with a
    start-after dependency is started only once that dependency is RUNNING
    and the applicable delay has passed; the launcher never waits for a
    child to finish. Every handle goes to the Supervisor the moment it is
    created.
    """

    def __init__(self, supervisor: Supervisor, log_router: Optional[LogRouter] = None,
                 abort_on_failure: Optional[bool] = None, confirm_window: Optional[float] = None) -> None:
        """
        :param supervisor: Receives every handle this launcher creates.
        :param log_router: Opens the per-process log files.
        :param abort_on_failure: Stop the batch at the first failed start instead of continuing.
        :param confirm_window: Seconds a process must stay alive to count as running.
        """
        self.supervisor = supervisor
        self.log_router = log_router or LogRouter()
        self.abort_on_failure = config.ABORT_ON_FAILURE if abort_on_failure is None else abort_on_failure
        self.confirm_window = config.STARTUP_CONFIRM_WINDOW if confirm_window is None else confirm_window

    def launch_all(self, specs: Sequence[ProcessSpec]) -> Tuple[List[ProcessHandle], List[FailedToStart]]:
        """
        Validates, orders and starts a batch of processes.

        :param specs: The batch, in declaration order.
        :return: The handles created, in start order, and one error per spec that failed to start.
        :raises InvalidSpec: If any spec is malformed; nothing is started.
        :raises CyclicDependency: If the start-after links form a cycle; nothing is started.
        """
        specs = list(specs)
        validate_batch(specs)
        ordered = order_specs(specs)
        log.info(f"Launching {len(ordered)} processes: {', '.join(s.name for s in ordered)}")

        batch_started = time.time()
        running_at: Dict[str, float] = {}
        ready_at: Dict[str, float] = {}
        handles: List[ProcessHandle] = []
        errors: List[FailedToStart] = []

        try:
            for spec in ordered:
                if self.supervisor.shutdown_requested.is_set():
                    log.warning("Shutdown requested; not starting the remaining processes.")
                    break
                if errors and self.abort_on_failure:
                    log.warning(f"Aborting launch after failure; {spec.name} and later processes are not started.")
                    break

                dependency = spec.start_after
                if dependency is None:
                    not_before = batch_started + spec.after_delay
                elif dependency in running_at:
                    not_before = max(ready_at[dependency], running_at[dependency] + spec.after_delay)
                else:
                    try:
                        handle, error = self._fail_unstarted(spec, f"dependency '{dependency}' is not running")
                    except ShutdownRequested:
                        log.warning("Shutdown requested; not starting the remaining processes.")
                        break
                    handles.append(handle)
                    errors.append(error)
                    continue

                if not self._sleep_until(not_before, spec.name):
                    log.warning("Shutdown requested; not starting the remaining processes.")
                    break

                try:
                    handle, error = self._launch_one(spec)
                except ShutdownRequested:
                    log.warning("Shutdown requested; not starting the remaining processes.")
                    break
                handles.append(handle)
                if error is not None:
                    errors.append(error)
                    continue
                running_at[spec.name] = handle.running_at
                ready_at[spec.name] = handle.running_at + spec.startup_delay
        finally:
            self.supervisor.finish_launch()

        started = sum(1 for h in handles if h.state is LifecycleState.RUNNING)
        log.info(f"Launch finished: {started} running, {len(errors)} failed, "
                 f"{len(ordered) - len(handles)} not attempted.")
        return handles, errors

    def _sleep_until(self, not_before: float, name: str) -> bool:
        """Waits until `not_before`; returns False if a shutdown arrives first."""
        remaining = not_before - time.time()
        if remaining > 0:
            log.info(f"Waiting {remaining:.1f}s before starting '{name}'...")
        while remaining > 0:
            if self.supervisor.shutdown_requested.wait(remaining):
                return False
            remaining = not_before - time.time()
        return not self.supervisor.shutdown_requested.is_set()

    def _launch_one(self, spec: ProcessSpec) -> Tuple[ProcessHandle, Optional[FailedToStart]]:
        """Starts a single process and hands its handle to the Supervisor."""
        log.info(f"Starting process: {spec.name}...")
        handle = ProcessHandle(spec, started_at=time.time())
        self.supervisor.register(handle)

        executable = resolve_executable(spec)
        if executable is None:
            return handle, self._fail(handle, f"executable '{spec.executable}' not found or not executable")

        try:
            handle.sink = self.log_router.open_sink(spec.log_file, spec.log_mode, owner=spec.name)
        except LogSinkError as e:
            return handle, self._fail(handle, str(e))

        try:
            handle.started_at = time.time()
            handle.popen = process_utils.start_process(spec, executable, handle.sink)
        except OSError as e:
            return handle, self._fail(handle, e.strerror or str(e))

        alive, code = process_utils.confirm_running(handle.popen, self.confirm_window)
        if not alive:
            return handle, self._fail(handle, f"exited immediately with code {code}", exit_code=code)

        self.supervisor.mark_running(handle)
        return handle, None

    def _fail(self, handle: ProcessHandle, reason: str, exit_code: Optional[int] = None) -> FailedToStart:
        self.supervisor.mark_failed_to_start(handle, reason, exit_code)
        return FailedToStart(handle.name, reason)

    def _fail_unstarted(self, spec: ProcessSpec, reason: str) -> Tuple[ProcessHandle, FailedToStart]:
        handle = ProcessHandle(spec, started_at=time.time())
        self.supervisor.register(handle)
        return handle, self._fail(handle, reason)
