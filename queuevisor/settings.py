"""
This module contains the configuration settings for the queuevisor supervisor.
It defines paths, supervisor timings, runner defaults and logging configuration.
It is used throughout the application to ensure consistent settings and paths.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(os.getenv("QUEUEVISOR_HOME", pathlib.Path.cwd())).resolve()
BIN_DIR = BASE_DIR / "bin"
LOGS_DIR = BASE_DIR / "logs"
CONFIG_DIR = BASE_DIR / "config"

#* --- Application File Paths ---
PROCESS_DB_PATH = pathlib.Path(os.getenv("QUEUEVISOR_PROCESS_DB", BIN_DIR / "processes.db"))
LOG_DB_PATH = LOGS_DIR / "app_logs.db"
PID_FILE_PATH = BIN_DIR / "supervisor.pid"
OVERRIDES_JSON_PATH = BIN_DIR / "overrides.json"
QUEUE_CONFIG_PATH = pathlib.Path(os.getenv("QUEUEVISOR_CONFIG", CONFIG_DIR / "queues.yml"))

#* --- Supervisor Settings ---
DEFAULT_MODE = os.getenv("QUEUEVISOR_MODE", "all").lower()
PROCESS_TITLE_PREFIX = "Queuevisor"
SUPERVISOR_TICK_INTERVAL = 0.1      # seconds between stop checks in the wait loop
PROCESS_HEARTBEAT_INTERVAL = 60     # seconds
PROCESS_ALIVE_THRESHOLD = 5 * 60    # seconds; also the prune interval
RUNNER_STOP_GRACE_PERIOD = 10       # seconds to wait for runners after stop(), no kill

#* --- Runner Defaults ---
DISPATCHER_DEFAULTS = {
    "polling_interval": 1,
    "batch_size": 500,
    "threads": 5,
}
SCHEDULER_DEFAULTS = {
    "polling_interval": 300,
    "batch_size": 500,
}

#* --- Logging ---
VERBOSE_LOGGING = False
LOG_DB_ENABLED = os.getenv("QUEUEVISOR_LOG_DB", "False").lower() in ('true', '1', 't')

#* --- MODIFIABLE SETTINGS (Changeable via the 'config' command) ---
MODIFIABLE_SETTINGS = {
    # Supervisor
    "SUPERVISOR_TICK_INTERVAL", "PROCESS_HEARTBEAT_INTERVAL",
    "PROCESS_ALIVE_THRESHOLD", "RUNNER_STOP_GRACE_PERIOD",
    # Logging
    "LOG_BUFFER_SIZE", "LOG_BUFFER_FLUSH_INTERVAL",
}

#* --- Default Values for Modifiable Settings ---
LOG_BUFFER_SIZE = 100
LOG_BUFFER_FLUSH_INTERVAL = 10
