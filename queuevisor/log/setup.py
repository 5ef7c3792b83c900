import logging
import sys

from queuevisor.local.config import effective_settings as config
from queuevisor.log.handler import SQLiteHandler

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - [%(processName)s:%(process)d] [%(name)s] - %(message)s'


class MainFormatter(logging.Formatter):
    """The console formatter shared by the supervisor and its runners."""

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT)


def setup_logging(console_level: int = logging.INFO) -> None:
    """
    Configures the root logger for the current process.
    This sets up handlers for the console and optionally SQLite, clearing
    any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to prevent re-adding them on re-runs
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        if isinstance(handler, SQLiteHandler):
            handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- SQLite Handler (conditional) ---
    if config.LOG_DB_ENABLED:
        try:
            sqlite_handler = SQLiteHandler(db_path=config.LOG_DB_PATH)
            sqlite_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(sqlite_handler)
        except Exception as e:
            root_logger.error(f"Failed to initialize SQLite logging handler: {e}. Logging to DB will be disabled.")
