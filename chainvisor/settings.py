"""
This module contains the default configuration settings for chainvisor.
It defines the state paths, supervision timings, launch policy and logging
options used throughout the application.
Values marked in MODIFIABLE_SETTINGS can be overridden via overrides.json.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
BASE_DIR = pathlib.Path.cwd()
STATE_DIR = pathlib.Path(os.getenv("CHAINVISOR_STATE_DIR", str(BASE_DIR / ".chainvisor")))

#* --- Session File Paths ---
STATE_FILE_PATH = STATE_DIR / "session.json"
OVERRIDES_JSON_PATH = STATE_DIR / "overrides.json"
LOG_DB_PATH = STATE_DIR / "supervisor_logs.db"

#* --- Supervisor Settings ---
GRACEFUL_SHUTDOWN_TIMEOUT = float(os.getenv("CHAINVISOR_GRACE", "10"))  # seconds before force-killing
SUPERVISOR_POLL_INTERVAL = 0.5  # seconds between liveness polls
STARTUP_CONFIRM_WINDOW = 0.2    # a process must survive this long to count as running
STARTUP_TIMEOUT = 30            # max seconds shutdown waits on processes still starting
STOP_WAIT_MARGIN = 5.0          # extra seconds `stop` gives a foreground supervisor beyond the grace period

#* --- Launch Policy ---
ABORT_ON_FAILURE = _env_flag("CHAINVISOR_ABORT_ON_FAILURE", "False")
DEFAULT_LOG_MODE = "truncate"   # same as a shell '>' redirect
LOG_MODES = ("append", "truncate")

#* --- Logging ---
LOG_DB_ENABLED = _env_flag("CHAINVISOR_LOG_DB", "True")
VERBOSE_LOGGING = False

#* --- MODIFIABLE SETTINGS (Changeable at runtime via 'config set') ---
MODIFIABLE_SETTINGS = {
    # Supervision
    "GRACEFUL_SHUTDOWN_TIMEOUT", "SUPERVISOR_POLL_INTERVAL",
    "STARTUP_CONFIRM_WINDOW", "STARTUP_TIMEOUT", "STOP_WAIT_MARGIN",
    # Launch
    "ABORT_ON_FAILURE", "DEFAULT_LOG_MODE",
    # Logging
    "LOG_DB_ENABLED", "LOG_BUFFER_SIZE", "LOG_BUFFER_FLUSH_INTERVAL",
    "LOG_HISTORY_COUNT", "LOG_TAIL_LINES",
}

#* --- Default Values for Modifiable Settings ---
LOG_BUFFER_SIZE = 50
LOG_BUFFER_FLUSH_INTERVAL = 5
LOG_HISTORY_COUNT = 50
LOG_TAIL_LINES = 40
