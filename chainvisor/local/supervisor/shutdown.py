"""
Control of a session started by another chainvisor process.

The only link to such a session is its state file, so everything here works
from recorded PIDs through psutil rather than from Popen objects.
"""
import time
import psutil
import logging
from pathlib import Path
from typing import Any, Dict, List, Set

from chainvisor.local.config import effective_settings as config
from chainvisor.local.supervisor import persistence

log = logging.getLogger(__name__)

STALE = "stale"
LIVE_STATES = ("starting", "running")


def session_status(state: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Reconciles a state file snapshot with the live process table.

    Records saved as starting or running whose PID no longer refers to the
    same process are reported as 'stale'.

    :param state: Contents of a session state file.
    :return: One row per recorded process, in launch order.
    """
    rows = []
    for record in state.get("processes", []):
        row = dict(record)
        # A starting record has no PID until its process has been spawned.
        if record.get("state") in LIVE_STATES and (record.get("pid") or record.get("state") == "running"):
            proc = persistence.live_process(record)
            if proc is None:
                row["state"] = STALE
            else:
                row["state"] = "running"
                row["resources"] = _resource_usage(proc)
        rows.append(row)
    return rows


def _resource_usage(proc: psutil.Process) -> Dict[str, float]:
    try:
        with proc.oneshot():
            return {"cpu": proc.cpu_percent(interval=None), "mem_mb": proc.memory_info().rss / 1024 / 1024}
    except psutil.Error:
        return {}


def identify_processes_to_stop(state: Dict[str, Any]) -> List[psutil.Process]:
    """
    Identifies the live recorded processes and their children, in reverse launch order.

    Only records saved as starting or running are considered; a terminal
    record's PID may already belong to an unrelated process.

    :param state: Contents of a session state file.
    :return: Processes to stop, dependents before their dependencies.
    """
    to_stop: List[psutil.Process] = []
    seen: Set[int] = set()
    for record in reversed(state.get("processes", [])):
        if record.get("state") not in LIVE_STATES:
            continue
        proc = persistence.live_process(record)
        if proc is None:
            continue
        try:
            family = [proc] + proc.children(recursive=True)
        except psutil.NoSuchProcess:
            log.warning(f"Process {proc.pid} no longer exists, skipping children retrieval.")
            continue
        for member in family:
            if member.pid not in seen:
                seen.add(member.pid)
                to_stop.append(member)
    return to_stop


def _terminate_processes(processes: List[psutil.Process]) -> None:
    """Sends SIGTERM to every process, in order."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to {proc.name()} (PID {proc.pid})")
            proc.terminate()
        except psutil.NoSuchProcess:
            log.warning(f"Process {proc.pid} no longer exists, skipping termination.")
            continue


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    if not processes:
        return

    log.warning(f"{len(processes)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            log.warning(f"Process {proc.pid} no longer exists, skipping forceful kill.")
            continue


def stop_session(state_path: Path, grace: float) -> int:
    """
    Stops every live process of an attached session, graceful first.

    A foreground supervisor that still owns the session is only told to stop
    through the shutdown signal file, and is given `grace` plus
    STOP_WAIT_MARGIN seconds to remove the state file itself. Background
    sessions, and sessions whose owner is gone or does not respond, have
    their recorded processes terminated directly.

    :param state_path: The session state file.
    :param grace: Seconds to wait before killing survivors.
    :return: The number of processes that had to be killed.
    """
    state = persistence.read_state_file(state_path)
    if state is None:
        log.info("No session state file found; nothing to stop.")
        persistence.clear_shutdown_signal(state_path)
        return 0

    persistence.request_shutdown(state_path)
    owner = persistence.owner_process(state)
    if owner is not None:
        timeout = grace + config.STOP_WAIT_MARGIN
        log.info(f"Session is supervised by PID {owner.pid}; asking it to shut down...")
        if _wait_for_owner(owner, state_path, timeout):
            persistence.clear_shutdown_signal(state_path)
            log.info("Supervisor shut the session down.")
            return 0
        log.warning(f"Supervisor PID {owner.pid} did not finish within {timeout}s. Stopping processes directly...")
        state = persistence.read_state_file(state_path) or state

    processes = identify_processes_to_stop(state)
    if not processes:
        log.info("No running processes found to stop.")
        cleanup_session_files(state_path)
        return 0

    log.info(f"Initiating graceful shutdown for {len(processes)} total processes...")
    _terminate_processes(processes)
    try:
        _, alive = psutil.wait_procs(processes, timeout=grace)
    except psutil.NoSuchProcess:
        alive = []
    _forceful_kill(alive)
    if alive:
        psutil.wait_procs(alive, timeout=5)

    cleanup_session_files(state_path)
    log.info("Session stop sequence completed.")
    return len(alive)


def _wait_for_owner(owner: psutil.Process, state_path: Path, timeout: float) -> bool:
    """Waits for the owning supervisor to remove the state file; False on timeout or if it dies first."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not state_path.exists():
            return True
        if not owner.is_running():
            break
        time.sleep(0.2)
    return not state_path.exists()


def cleanup_session_files(state_path: Path) -> None:
    """Removes the state file and the shutdown signal file."""
    persistence.remove_state_file(state_path)
    persistence.clear_shutdown_signal(state_path)
