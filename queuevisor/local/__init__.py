"""
Local package for the queuevisor supervisor.

This package provides the runtime machinery: merged settings, queue
configuration, the database managers, runners and the supervisor itself.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
