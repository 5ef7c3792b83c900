import time
import sqlite3
import logging
from pathlib import Path
from collections import namedtuple
from typing import List, Dict, Any
from queuevisor.local.database.base import BaseDBManager

LogEntry = namedtuple('LogEntry', ['timestamp', 'level', 'pid', 'module', 'message'])
log = logging.getLogger(__name__)


class LogDBManager(BaseDBManager):
    """
    Manages the SQLite database that stores log records from the supervisor
    and every runner process.
    """

    def __init__(self, db_path: Path):
        super().__init__(db_path, lock=None, enable_wal=True)

    def initialize_database(self) -> None:
        """Ensures the log table exists."""
        try:
            self.execute('''
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL,
                    level TEXT,
                    pid INTEGER,
                    module TEXT,
                    funcName TEXT,
                    lineno INTEGER,
                    message TEXT
                )
            ''')
            log.debug("Log database table created/verified.")
        except sqlite3.Error as e:
            log.critical(f"Could not create log database table: {e}", exc_info=True)
            raise

    def insert_log_batch(self, log_entries: List[Dict[str, Any]]) -> None:
        """
        Inserts multiple log entries in a single transaction.

        :param log_entries: Dicts with keys timestamp, level, pid, module, funcName, lineno, message.
        """
        if not log_entries:
            return

        params = [(
            entry['timestamp'], entry['level'], entry['pid'], entry['module'],
            entry['funcName'], entry['lineno'], entry['message']
        ) for entry in log_entries]
        self.execute_many(
            '''INSERT INTO logs (timestamp, level, pid, module, funcName, lineno, message)
               VALUES (?, ?, ?, ?, ?, ?, ?)''',
            params
        )

    def fetch_last_entries(self, limit: int) -> List[LogEntry]:
        """
        Fetches the most recent N log entries, oldest first.

        :param limit: The maximum number of log entries to retrieve.
        """
        rows = self.fetch_all(
            "SELECT timestamp, level, pid, module, message FROM logs ORDER BY id DESC LIMIT ?",
            (limit,)
        )
        entries = []
        for row in reversed(rows):
            dt = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(row['timestamp']))
            entries.append(LogEntry(
                timestamp=row['timestamp'], level=row['level'], pid=row['pid'], module=row['module'],
                message=f"{dt} - {row['level']:<8} - [{row['pid']}] [{row['module']}] - {row['message']}"
            ))
        return entries
