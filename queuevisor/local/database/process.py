import json
import time
import sqlite3
import logging
from pathlib import Path
from collections import namedtuple
from typing import Any, Dict, List, Optional
from queuevisor.local.database.base import BaseDBManager

ProcessRecord = namedtuple(
    'ProcessRecord',
    ['id', 'kind', 'pid', 'hostname', 'supervisor_pid', 'metadata', 'created_at', 'last_heartbeat_at']
)
log = logging.getLogger(__name__)


class ProcessDBManager(BaseDBManager):
    """
    The process registry: one heartbeat row per live runner process.

    Runners register themselves when they start, heartbeat periodically and
    deregister on a clean exit. A runner that dies without deregistering
    leaves a row whose heartbeat goes stale; the supervisor's prune task
    removes those rows.
    """

    def __init__(self, db_path: Path):
        """
        Initializes the ProcessDBManager.

        :param db_path: The path to the registry SQLite database file.
        """
        super().__init__(db_path, lock=None, enable_wal=True)

    def initialize_database(self) -> None:
        """Ensures the processes table exists."""
        try:
            self.execute('''
                CREATE TABLE IF NOT EXISTS processes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    pid INTEGER NOT NULL,
                    hostname TEXT,
                    supervisor_pid INTEGER,
                    metadata TEXT,
                    created_at REAL NOT NULL,
                    last_heartbeat_at REAL NOT NULL
                )
            ''')
            self.execute(
                "CREATE INDEX IF NOT EXISTS idx_processes_heartbeat ON processes (last_heartbeat_at)"
            )
            log.debug("Process registry table created/verified.")
        except sqlite3.Error as e:
            log.critical(f"Could not create process registry table: {e}", exc_info=True)
            raise

    def register(
        self,
        kind: str,
        pid: int,
        hostname: Optional[str] = None,
        supervisor_pid: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Inserts a heartbeat row for a newly started process.

        :return: The id of the new record.
        """
        now = time.time()
        process_id = self.execute_insert(
            '''INSERT INTO processes (kind, pid, hostname, supervisor_pid, metadata, created_at, last_heartbeat_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)''',
            (kind, pid, hostname, supervisor_pid, json.dumps(metadata or {}), now, now)
        )
        log.debug(f"Registered {kind} process {pid} as record {process_id}.")
        return process_id

    def heartbeat(self, process_id: int) -> bool:
        """
        Refreshes the heartbeat timestamp of a record.

        :return: False if the record no longer exists (e.g. it was pruned).
        """
        updated = self.execute_rowcount(
            "UPDATE processes SET last_heartbeat_at = ? WHERE id = ?",
            (time.time(), process_id)
        )
        return updated > 0

    def deregister(self, process_id: int) -> None:
        """Deletes a record on a clean exit."""
        self.execute_rowcount("DELETE FROM processes WHERE id = ?", (process_id,))
        log.debug(f"Deregistered process record {process_id}.")

    def prune(self, alive_threshold: float) -> int:
        """
        Deletes every record whose last heartbeat is older than the threshold.

        :param alive_threshold: Maximum heartbeat age in seconds.
        :return: The number of records removed.
        """
        cutoff = time.time() - alive_threshold
        pruned = self.execute_rowcount(
            "DELETE FROM processes WHERE last_heartbeat_at <= ?", (cutoff,)
        )
        if pruned:
            log.info(f"Pruned {pruned} stale process record(s).")
        return pruned

    def fetch_processes(self) -> List[ProcessRecord]:
        """Returns all records ordered by id."""
        rows = self.fetch_all(
            '''SELECT id, kind, pid, hostname, supervisor_pid, metadata, created_at, last_heartbeat_at
               FROM processes ORDER BY id'''
        )
        return [
            ProcessRecord(
                row['id'], row['kind'], row['pid'], row['hostname'], row['supervisor_pid'],
                json.loads(row['metadata'] or "{}"), row['created_at'], row['last_heartbeat_at']
            )
            for row in rows
        ]
