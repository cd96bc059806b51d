"""
This module contains the default configuration settings for AppStarter.
It defines paths, supervisor timings, scheduler bounds and logging limits.
Values can be overridden from the environment or a .env file.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Core Paths ---
DATA_DIR = pathlib.Path(os.getenv("APPSTARTER_DATA_DIR", str(pathlib.Path.home() / ".appstarter"))).expanduser()
COMMANDS_FILE = DATA_DIR / "commands.json"
OVERRIDES_JSON_PATH = DATA_DIR / "overrides.json"

#* --- Supervisor Settings ---
STOP_TIMEOUT_MS = int(os.getenv("STOP_TIMEOUT_MS", "5000"))  # graceful wait before force-killing
KILL_WAIT_SECONDS = 2        # bounded wait after a forceful kill
RESTART_PAUSE_SECONDS = 1    # pause between stop and start on an explicit restart

#* --- Scheduler Settings ---
SCHEDULE_LOOKAHEAD_MINUTES = 525600  # one year

#* --- Logging ---
MAX_LOG_ENTRIES_PER_COMMAND = 1000
LOG_HISTORY_COUNT = 500
SHOW_PROCESS_OUTPUT = _env_flag("SHOW_PROCESS_OUTPUT", "True")
VERBOSE_LOGGING = _env_flag("VERBOSE_LOGGING", "False")

#* --- MODIFIABLE SETTINGS (Changeable at runtime via overrides.json) ---
MODIFIABLE_SETTINGS = {
    "STOP_TIMEOUT_MS", "KILL_WAIT_SECONDS", "RESTART_PAUSE_SECONDS",
    "MAX_LOG_ENTRIES_PER_COMMAND", "LOG_HISTORY_COUNT", "SHOW_PROCESS_OUTPUT",
}
