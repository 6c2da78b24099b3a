import sys
import logging
from pathlib import Path
from typing import Optional

from chainvisor.log.handler import SQLiteHandler

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'


class MainFormatter(logging.Formatter):
    """The console formatter used for all supervisor output."""

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT)


def setup_logging(console_level: int = logging.INFO, db_path: Optional[Path] = None) -> None:
    """
    Configures the root logger for the application.
    This sets up a console handler and, when a database path is given, the
    SQLite history handler, clearing any previously configured handlers to
    prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param db_path: Where to keep the supervisor log history, or None to skip it.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    #* --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    #* --- SQLite Handler (history for the 'history' command) ---
    if db_path is not None:
        try:
            sqlite_handler = SQLiteHandler(db_path=db_path)
            sqlite_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(sqlite_handler)
        except Exception as e:
            root_logger.error(f"Failed to initialize SQLite logging handler: {e}. Logging to DB will be disabled.")


def set_console_level(level: int) -> bool:
    """
    Changes the level of the console handler installed by setup_logging.

    :return: True if a console handler was found.
    """
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)
            return True
    return False
