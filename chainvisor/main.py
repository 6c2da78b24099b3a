import sys
import logging
import threading
from typing import List, Optional

from chainvisor.local.config import effective_settings as config
from chainvisor.log.setup import setup_logging
import chainvisor.local.console as console

log = logging.getLogger("console")

CONSOLE_LOCK = threading.Lock()


def _interactive() -> int:
    """Runs the interactive management console until 'exit' or Ctrl-C."""
    print("--- chainvisor Management Console ---")
    print("Type 'help' for a list of commands.")

    last_code = 0
    while True:
        try:
            # The input prompt must be outside the lock to not block background threads
            command_line_str = input("> ")
            with CONSOLE_LOCK:
                command_line = command_line_str.strip().split()
                if not command_line:
                    continue
                command, args = command_line[0].lower(), command_line[1:]
                if command == console.EXIT:
                    return last_code
                last_code = console.execute_command(command, args)
                log.debug(f"'{command}' finished with exit code {last_code}")
        except (KeyboardInterrupt, EOFError):
            with CONSOLE_LOCK:
                log.warning("Exiting console.")
                return last_code


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the console application."""
    args = list(sys.argv[1:] if argv is None else argv)

    if "--verbose" in args:
        args.remove("--verbose")
        config.VERBOSE_LOGGING = True
    console_level = logging.DEBUG if config.VERBOSE_LOGGING else logging.INFO
    setup_logging(console_level, config.LOG_DB_PATH if config.LOG_DB_ENABLED else None)

    # Non-interactive mode for one-off commands
    if args:
        command, command_args = args[0].lower(), args[1:]
        code = console.execute_command(command, command_args)
    else:
        code = _interactive()
    logging.shutdown()
    return min(code, 255)


if __name__ == "__main__":
    sys.exit(main())
