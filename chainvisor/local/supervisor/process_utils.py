import sys
import time
import psutil
import logging
import subprocess
from pathlib import Path
from typing import IO, Any, Dict, List, Optional, Tuple

from chainvisor.local.spec import ProcessSpec, merged_env

log = logging.getLogger(__name__)


#* --- Process Status ---
def get_create_time(pid: int) -> Optional[float]:
    try:
        return psutil.Process(pid).create_time()
    except psutil.Error:
        return None


#* --- Process Creation ---
def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific creation flags for subprocess.Popen."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    # Detach from our session so a Ctrl-C in the console doesn't reach the children.
    return {"start_new_session": True}


def start_process(spec: ProcessSpec, executable: Path, sink: IO[bytes]) -> subprocess.Popen:
    """
    Starts one child process with its output wired to `sink`.

    :param spec: The spec describing arguments, working directory and environment.
    :param executable: The resolved executable path.
    :param sink: The log file receiving both stdout and stderr.
    :return: The started Popen object.
    :raises OSError: If the OS refuses to start the process.
    """
    args = [str(executable), *spec.args]
    log.debug(f"Exec '{spec.name}': {' '.join(args)} (cwd={spec.cwd})")
    return subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=sink,
        stderr=subprocess.STDOUT,
        cwd=str(spec.cwd),
        env=merged_env(spec),
        **_get_popen_creation_flags(),
    )


def confirm_running(popen: subprocess.Popen, window: float) -> Tuple[bool, Optional[int]]:
    """
    Watches a freshly started process for `window` seconds.

    :return: (True, None) if it is still alive afterwards, else (False, exit code).
    """
    deadline = time.monotonic() + window
    while True:
        code = popen.poll()
        if code is not None:
            return False, code
        if time.monotonic() >= deadline:
            break
        time.sleep(min(0.02, max(0.0, deadline - time.monotonic())))

    try:
        if psutil.Process(popen.pid).status() == psutil.STATUS_ZOMBIE:
            return False, popen.wait()
    except psutil.NoSuchProcess:
        return False, popen.wait()
    return True, None


#* --- Process Termination ---
def collect_tree(pid: int) -> List[psutil.Process]:
    """Returns the process and all of its descendants that are still alive."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []
    try:
        return [parent] + parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return [parent]


def signal_tree(pid: int, force: bool = False) -> List[psutil.Process]:
    """
    Sends SIGTERM (or SIGKILL when `force`) to a process and its descendants.

    :return: The processes that were signalled.
    """
    signalled = []
    for proc in collect_tree(pid):
        try:
            if force:
                log.debug(f"Sending SIGKILL to {proc.pid}")
                proc.kill()
            else:
                log.debug(f"Sending SIGTERM to {proc.pid}")
                proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            log.warning(f"Access denied signalling PID {proc.pid}.")
    return signalled
