import logging
from typing import List

from chainvisor.local.errors import SupervisorError
from chainvisor.local.console.handler import (
    UsageError, handle_check_config_command, handle_config_command, handle_history_command,
    handle_logs_command, handle_run_command, handle_start_command, handle_status_command,
    handle_stop_command, print_help, toggle_verbose_logging,
)

log = logging.getLogger(__name__)

EXIT = "exit"


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'status').
    :param args: A list of arguments for the command. Consumed options are removed.
    :return int: The command's exit code.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map = {
        "start": lambda: handle_start_command(args),
        "run": lambda: handle_run_command(args),
        "status": lambda: handle_status_command(args),
        "stop": lambda: handle_stop_command(args),
        "shutdown": lambda: handle_stop_command(args),  # alias
        "logs": lambda: handle_logs_command(args),
        "history": lambda: handle_history_command(args),
        "check-config": lambda: handle_check_config_command(args),
        "config": lambda: handle_config_command(args),
        "verbose": toggle_verbose_logging,
        "help": print_help,
    }

    if command not in command_map:
        print(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 2

    try:
        return command_map[command]()
    except UsageError as e:
        print(f"Error: {e}")
        return 2
    except SupervisorError as e:
        log.error(f"'{command}' failed: {e}")
        return 1
