import time
import signal
import logging
import setproctitle
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from chainvisor.local.config import effective_settings as config
from chainvisor.local.database import LogDBManager
from chainvisor.local.errors import ConfigError, CyclicDependency, InvalidSpec, SupervisorError, TimedOut
from chainvisor.local.spec import ProcessSpec, load_specs, validate_batch
from chainvisor.local.supervisor import Launcher, LifecycleState, Supervisor, order_specs, persistence
from chainvisor.local.supervisor.log_router import tail_file
from chainvisor.local.supervisor.shutdown import STALE, session_status, stop_session
from chainvisor.log.setup import set_console_level

log = logging.getLogger(__name__)

FAILURE_STATES = {"crashed", "killed", "failed_to_start", STALE}


class UsageError(Exception):
    """Bad command-line usage."""


#* --- Argument helpers ---
def pop_option(args: List[str], flag: str, default: Optional[str] = None) -> Optional[str]:
    """Removes `flag VALUE` (or `flag=VALUE`) from args and returns VALUE."""
    for i, arg in enumerate(args):
        if arg == flag:
            if i + 1 >= len(args):
                raise UsageError(f"Option {flag} needs a value")
            value = args[i + 1]
            del args[i:i + 2]
            return value
        if arg.startswith(flag + "="):
            del args[i]
            return arg.split("=", 1)[1]
    return default


def pop_flag(args: List[str], flag: str) -> bool:
    if flag in args:
        args.remove(flag)
        return True
    return False


def _state_path(args: List[str]) -> Path:
    return Path(pop_option(args, "--state-file", str(config.STATE_FILE_PATH)))


def _grace(args: List[str]) -> Optional[float]:
    """Pops --grace; returns None when it was not given."""
    raw = pop_option(args, "--grace")
    if raw is None:
        return None
    try:
        grace = float(raw)
    except ValueError:
        raise UsageError(f"--grace expects seconds, got '{raw}'")
    if grace < 0:
        raise UsageError("--grace must not be negative")
    return grace


def _load_batch(args: List[str]) -> Tuple[List[ProcessSpec], Dict[str, Any]]:
    config_path = pop_option(args, "--config")
    if not config_path:
        raise UsageError("--config <file> is required")
    return load_specs(Path(config_path))


#* --- Reporting ---
def format_table(rows: Iterable[Dict[str, Any]]) -> str:
    """Formats the per-process summary: name, PID, state, exit code and log or error."""
    lines = [f"  {'NAME':<20} {'PID':<8} {'STATE':<16} {'EXIT':<6} DETAILS"]
    for row in rows:
        state = row["state"].value if isinstance(row["state"], LifecycleState) else str(row["state"])
        pid = row.get("pid") or "-"
        exit_code = "-" if row.get("exit_code") is None else row["exit_code"]
        details = row.get("error") or row.get("log_path") or ""
        resources = row.get("resources")
        if resources:
            details = f"CPU {resources['cpu']:.1f}% | MEM {resources['mem_mb']:.1f} MB | {details}"
        lines.append(f"  {row['name']:<20} {pid!s:<8} {state.upper():<16} {exit_code!s:<6} {details}")
    return "\n".join(lines)


def print_summary(title: str, rows: List[Dict[str, Any]]) -> None:
    print(f"\n--- {title} ---")
    if rows:
        print(format_table(rows))
    else:
        print("  (no processes)")
    print("-" * (len(title) + 8) + "\n")


def _report_batch_error(e: SupervisorError) -> None:
    if isinstance(e, InvalidSpec):
        log.error(f"Invalid process batch ({len(e.errors)} problems):")
        for problem in e.errors:
            log.error(f"  - {problem}")
    else:
        log.error(str(e))


#* --- Session commands ---
def check_if_already_running(state_path: Path) -> bool:
    """
    Checks if a session is already running based on the state file.

    :return: True if any recorded process is still alive.
    """
    state = persistence.read_state_file(state_path)
    if state and any(persistence.live_process(r) for r in state["processes"]):
        log.error(f"A session is already running (state file '{state_path}'). Use 'stop' first.")
        return True
    return False


def _launch(args: List[str], supervisor: Supervisor) -> Tuple[bool, int, Dict[str, Any]]:
    """
    Loads a batch and launches it under `supervisor`.

    :return: (launched, number of specs not running, batch settings).
    """
    state_path = supervisor.state_path
    abort_flag = pop_flag(args, "--abort-on-failure")
    try:
        specs, batch_settings = _load_batch(args)
    except ConfigError as e:
        log.error(str(e))
        return False, 1, {}

    if check_if_already_running(state_path):
        return False, 1, batch_settings

    persistence.clear_shutdown_signal(state_path)
    abort_on_failure = abort_flag or bool(batch_settings.get("abort_on_failure", config.ABORT_ON_FAILURE))
    launcher = Launcher(supervisor, abort_on_failure=abort_on_failure)
    try:
        handles, errors = launcher.launch_all(specs)
    except (InvalidSpec, CyclicDependency) as e:
        _report_batch_error(e)
        return False, max(1, len(specs)), batch_settings

    not_running = len(specs) - sum(1 for h in handles if h.state is LifecycleState.RUNNING)
    for error in errors:
        log.error(str(error))
    return True, not_running, batch_settings


def handle_start_command(args: List[str]) -> int:
    """
    Launches a batch and leaves it running in the background.

    :return: The number of processes that did not reach RUNNING.
    """
    supervisor = Supervisor(state_path=_state_path(args))
    launched, failures, _ = _launch(args, supervisor)
    if not launched:
        supervisor.close()
        return failures

    print_summary("Launch Summary", supervisor.summary())
    supervisor.detach()
    if failures:
        log.warning(f"{failures} processes are not running.")
    else:
        log.info(f"All processes started. Session state: {supervisor.state_path}")
    return failures


def handle_run_command(args: List[str]) -> int:
    """
    Launches a batch and supervises it in the foreground until every process
    has stopped or a shutdown is requested (Ctrl-C, SIGTERM or 'stop').

    :return: The number of processes in a failure state at the end.
    """
    supervisor = Supervisor(state_path=_state_path(args))
    grace = _grace(args)

    def _on_signal(signum, _frame):
        log.info(f"Received signal {signum}; shutting down.")
        supervisor.shutdown_requested.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        setproctitle.setproctitle(f"chainvisor - supervisor ({supervisor.state_path.name})")
        launched, failures, batch_settings = _launch(args, supervisor)
        if not launched:
            return failures
        if grace is None:
            grace = float(batch_settings.get("grace", config.GRACEFUL_SHUTDOWN_TIMEOUT))

        print_summary("Launch Summary", supervisor.summary())
        log.info("Supervising. Press Ctrl-C to stop all processes.")
        _supervision_loop(supervisor, grace)

        rows = supervisor.summary()
        print_summary("Final Report", rows)
        return sum(1 for row in rows if row["state"].is_failure)
    finally:
        supervisor.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _supervision_loop(supervisor: Supervisor, grace: float) -> None:
    """Reports exits as they happen and turns shutdown requests into shutdown_all."""
    while True:
        if supervisor.shutdown_requested.is_set() or persistence.check_for_shutdown_signal(supervisor.state_path):
            supervisor.shutdown_all(grace)
        try:
            event = supervisor.wait_any(timeout=max(config.SUPERVISOR_POLL_INTERVAL, 0.1))
        except TimedOut:
            continue
        if event is None:
            log.info("All supervised processes have stopped.")
            return
        name, state = event
        log.info(f"Process '{name}' is now {state.value} (exit code {supervisor.exit_code(name)}).")


def handle_status_command(args: List[str]) -> int:
    """
    Prints the status of the session recorded in the state file.

    :return: The number of processes in a failure state.
    """
    state_path = _state_path(args)
    state = persistence.read_state_file(state_path)
    if not state:
        print("\nNo session is running (no state file found).\n")
        return 0

    rows = session_status(state)
    print_summary(f"Session Status ({state_path})", rows)
    started = state.get("started_at")
    if started:
        print(f"Runtime: {time.strftime('%H:%M:%S', time.gmtime(time.time() - started))}")

    if rows and all(row["state"] != "running" for row in rows):
        print("\nWARNING: No recorded process is alive but a state file exists.")
        print("Run 'stop' to clean it up before starting again.\n")
    return sum(1 for row in rows if row["state"] in FAILURE_STATES)


def handle_stop_command(args: List[str]) -> int:
    state_path = _state_path(args)
    grace = _grace(args)
    if grace is None:
        grace = config.GRACEFUL_SHUTDOWN_TIMEOUT
    killed = stop_session(state_path, grace)
    if killed:
        print(f"Session stopped; {killed} processes had to be killed.")
    else:
        print("Session stopped.")
    return 0


def handle_logs_command(args: List[str]) -> int:
    """Prints the last lines of one process's log file."""
    raw_lines = pop_option(args, "--lines", str(config.LOG_TAIL_LINES))
    if not raw_lines.isdigit():
        raise UsageError(f"--lines expects a number, got '{raw_lines}'")
    lines = int(raw_lines)
    state_path = _state_path(args)
    config_path = pop_option(args, "--config")
    if not args:
        raise UsageError("Usage: logs <name> [--lines N] [--config FILE]")
    name = args[0]

    log_path = None
    if config_path:
        specs, _ = load_specs(Path(config_path))
        log_path = next((s.log_file for s in specs if s.name == name), None)
    else:
        state = persistence.read_state_file(state_path) or {"processes": []}
        log_path = next((Path(r["log_path"]) for r in state["processes"] if r.get("name") == name), None)

    if log_path is None:
        print(f"Unknown process '{name}'.")
        return 1
    if not log_path.exists():
        print(f"Log file '{log_path}' does not exist yet.")
        return 1

    print(f"\n--- Last {lines} lines of {log_path} ---")
    for line in tail_file(log_path, lines):
        print(line)
    print()
    return 0


def handle_history_command(args: List[str]) -> int:
    """Prints the most recent supervisor log records."""
    if args and not args[0].isdigit():
        raise UsageError(f"Usage: history [N], got '{args[0]}'")
    count = int(args[0]) if args else config.LOG_HISTORY_COUNT
    entries = LogDBManager(config.LOG_DB_PATH).fetch_last_entries(count, config.VERBOSE_LOGGING)
    if not entries:
        print("No supervisor log history recorded yet.")
        return 0
    print(f"\n--- Last {len(entries)} supervisor log entries ---")
    for entry in entries:
        print(entry.message)
    print()
    return 0


def handle_check_config_command(args: List[str]) -> int:
    """
    Validates a batch file, including executables, without starting anything.

    :return: The number of problems found.
    """
    try:
        specs, _ = _load_batch(args)
        validate_batch(specs, check_executable=True)
        ordered = order_specs(specs)
    except ConfigError as e:
        log.error(str(e))
        return 1
    except InvalidSpec as e:
        _report_batch_error(e)
        return len(e.errors)
    except CyclicDependency as e:
        _report_batch_error(e)
        return 1

    print("\nConfiguration OK. Start order:")
    for position, spec in enumerate(ordered, 1):
        after = f" (after {spec.start_after})" if spec.start_after else ""
        print(f"  {position}. {spec.name}{after} -> {spec.log_file}")
    print()
    return 0


def handle_config_command(args: List[str]) -> int:
    """
    Handles the 'config' sub-commands: show, set and help.
    """
    sub_command = args[0].lower() if args else "show"
    if sub_command == "show":
        print("\n--- Current Configuration ---")
        print(f"(Overrides: {config.OVERRIDES_JSON_PATH})")
        for key in sorted(config.MODIFIABLE_SETTINGS):
            print(f"  {key} = {getattr(config, key, 'N/A')}")
        print(f"  STATE_FILE_PATH = {config.STATE_FILE_PATH}")
        print("-----------------------------\n")
        return 0
    if sub_command == "set":
        if len(args) < 3:
            raise UsageError("Usage: config set <SETTING_NAME> <VALUE>")
        success, message = config.set_override(args[1], " ".join(args[2:]))
        print(message)
        return 0 if success else 1
    if sub_command == "help":
        print("\nConfig Command Help:")
        print("  config show                - Display all modifiable settings.")
        print("  config set KEY VALUE       - Change a setting for subsequent commands.")
        print("  config help                - Show this help message.")
        return 0
    raise UsageError(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")


def toggle_verbose_logging() -> int:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    config.VERBOSE_LOGGING = not config.VERBOSE_LOGGING
    set_console_level(logging.DEBUG if config.VERBOSE_LOGGING else logging.INFO)
    print(f"Verbose console logging is now {'ON' if config.VERBOSE_LOGGING else 'OFF'}.")
    return 0


def print_help() -> int:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  start --config FILE [--abort-on-failure]  - Launch a process batch in the background.")
    print("  run --config FILE [--grace S]             - Launch and supervise in the foreground.")
    print("  status                                    - Show the state of the running session.")
    print("  stop [--grace S]                          - Stop the running session, graceful then forced.")
    print("  logs NAME [--lines N]                     - Show the tail of a process log file.")
    print("  history [N]                               - Show recent supervisor log entries.")
    print("  check-config --config FILE                - Validate a batch file without starting it.")
    print("  config <cmd>                              - Manage settings. Use 'config help' for details.")
    print("  verbose                                   - Toggle DEBUG output on the console.")
    print("  exit                                      - Leave the interactive console.")
    print("Common options: --state-file PATH selects the session state file.")
    print()
    return 0
