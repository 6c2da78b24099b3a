import os
import json
import time
import psutil
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from chainvisor.local.errors import LogSinkError

log = logging.getLogger(__name__)


def read_state_file(state_path: Path) -> Optional[Dict[str, Any]]:
    """
    Reads a session state file from disk and returns its contents.

    :param state_path: The session state file.
    :return: The session record if the file exists and is valid, else None.
    """
    if not state_path.exists():
        return None
    try:
        with state_path.open("r") as f:
            state = json.load(f)
        if not isinstance(state, dict) or not isinstance(state.get("processes"), list):
            log.error(f"State file '{state_path}' is malformed. Deleting.")
            state_path.unlink(missing_ok=True)
            return None
        return state
    except (json.JSONDecodeError, IOError):
        log.warning(f"Could not read state file '{state_path}', assuming stale.")
        state_path.unlink(missing_ok=True)
        return None


def write_state_file(state_path: Path, records: Iterable[Dict[str, Any]], started_at: float,
                     detached: bool = False) -> None:
    """
    Atomically writes the session registry snapshot to the state file.

    :param state_path: The session state file.
    :param records: One snapshot per handle, in launch order.
    :param started_at: When the session was launched.
    :param detached: True once the writing supervisor no longer watches the session.
    :raises LogSinkError: If the file cannot be written.
    """
    state = {
        "supervisor_pid": os.getpid(),
        "supervisor_create_time": psutil.Process().create_time(),
        "detached": detached,
        "started_at": started_at,
        "updated_at": time.time(),
        "processes": list(records),
    }
    temp_path = state_path.with_suffix(".tmp")
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        with temp_path.open("w") as f:
            json.dump(state, f, indent=4)
        temp_path.replace(state_path)
    except (IOError, OSError) as e:
        raise LogSinkError(f"Failed to write state file '{state_path}': {e}") from e
    finally:
        temp_path.unlink(missing_ok=True)


def remove_state_file(state_path: Path) -> None:
    state_path.unlink(missing_ok=True)
    log.debug(f"Removed state file '{state_path}'.")


#* --- Shutdown signal ---
def shutdown_signal_path(state_path: Path) -> Path:
    return state_path.with_suffix(".stop")


def request_shutdown(state_path: Path) -> None:
    """Leaves a signal file that tells a foreground supervisor to shut down."""
    signal_path = shutdown_signal_path(state_path)
    signal_path.parent.mkdir(parents=True, exist_ok=True)
    signal_path.touch()


def check_for_shutdown_signal(state_path: Path) -> bool:
    """Checks if the shutdown signal file exists."""
    if shutdown_signal_path(state_path).exists():
        log.info("Shutdown signal file detected. Exiting supervisor loop.")
        return True
    return False


def clear_shutdown_signal(state_path: Path) -> None:
    shutdown_signal_path(state_path).unlink(missing_ok=True)


#* --- Liveness of recorded processes ---
def live_process(record: Dict[str, Any]) -> Optional[psutil.Process]:
    """
    Returns the psutil process for a state file record if it is still alive.

    The recorded creation time guards against the PID having been reused by
    an unrelated process since the record was written, so a record without
    one never counts as alive.

    :param record: One entry of the state file's `processes` list.
    :return: The live process, or None if it is gone, a zombie or a different process.
    """
    pid = record.get("pid")
    create_time = record.get("create_time")
    if not pid or create_time is None or not psutil.pid_exists(pid):
        return None
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return None
    try:
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        if abs(proc.create_time() - create_time) > 1.0:
            return None
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        log.debug(f"Access denied inspecting PID {pid}; treating it as alive.")
    return proc


def owner_process(state: Dict[str, Any]) -> Optional[psutil.Process]:
    """
    Returns the foreground supervisor that still owns a session, if any.

    Detached sessions and sessions recorded by the calling process have no
    other owner to defer to.
    """
    pid = state.get("supervisor_pid")
    if state.get("detached") or not pid or pid == os.getpid():
        return None
    return live_process({"pid": pid, "create_time": state.get("supervisor_create_time")})
