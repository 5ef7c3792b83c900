import os
import sys
import sqlite3
import logging
import weakref
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from queuevisor.local.config import effective_settings as config
from queuevisor.local.database import LogDBManager

_live_handlers = weakref.WeakSet()


def _reset_handlers_after_fork() -> None:
    for handler in list(_live_handlers):
        handler._reset_after_fork()


class SQLiteHandler(logging.Handler):
    """
    A custom logging handler that writes logs to a SQLite database
    in batches using a background thread.

    Runner processes create their own instance after the fork, since the
    flush thread of the parent does not survive it. Entries buffered before
    a fork belong to the parent and are dropped in the child.
    """
    def __init__(self, db_path: Path):
        """
        Initializes the SQLite handler.

        :param db_path: The path to the SQLite database file.
        """
        super().__init__()
        self.db_path = db_path
        self.log_buffer: List[Dict[str, Any]] = []
        self.buffer_lock = threading.Lock()
        self.flush_thread: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.logDB = LogDBManager(self.db_path)
        self.logDB.initialize_database()
        self._start_flush_thread()
        _live_handlers.add(self)

    def _start_flush_thread(self) -> None:
        """Starts the background thread that periodically flushes logs to the database."""
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True)
        self.flush_thread.name = "SQLiteFlushThread"
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        while not self.stop_event.wait(config.LOG_BUFFER_FLUSH_INTERVAL):
            self.flush()

    def emit(self, record: logging.LogRecord) -> None:
        """
        Adds a log record to the internal buffer for batch writing.

        :param record: The log record to be processed.
        """
        log_entry = {
            "timestamp": record.created,
            "level": record.levelname,
            "pid": record.process or os.getpid(),
            "module": record.name,
            "funcName": record.funcName,
            "lineno": record.lineno,
            "message": record.getMessage()
        }
        with self.buffer_lock:
            self.log_buffer.append(log_entry)
            full = len(self.log_buffer) >= config.LOG_BUFFER_SIZE
        if full:
            self.flush()

    def flush(self) -> None:
        """Writes the buffered entries to the database."""
        with self.buffer_lock:
            entries_to_write = list(self.log_buffer)
            self.log_buffer.clear()
        if not entries_to_write:
            return
        try:
            self.logDB.insert_log_batch(entries_to_write)
        except sqlite3.Error as e:
            print(f"Error writing logs to DB: {e}. Log entries: {len(entries_to_write)}", file=sys.stderr)

    def close(self) -> None:
        """Stops the flush thread and writes whatever is still buffered."""
        self.stop_event.set()
        if self.flush_thread and self.flush_thread.is_alive() and self.flush_thread is not threading.current_thread():
            self.flush_thread.join()
        self.flush()
        super().close()

    def _reset_after_fork(self) -> None:
        """Runs in a freshly forked child, where the parent's buffer and flush thread are stale."""
        self.buffer_lock = threading.Lock()
        self.log_buffer = []
        self.flush_thread = None
        self.stop_event = threading.Event()


os.register_at_fork(after_in_child=_reset_handlers_after_fork)
