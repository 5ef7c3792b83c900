"""
This module initializes the local database management system.
It imports the database managers for the process registry and logs.
"""

from .log import LogDBManager
from .process import ProcessDBManager, ProcessRecord

__all__ = ["LogDBManager", "ProcessDBManager", "ProcessRecord"]
