"""
The Supervisor package.
Manages the lifecycle of the runner processes.

This package contains the central Supervisor class and its helper modules,
which together handle spawning, stopping and reaping runners, the PID file,
and the periodic pruning of stale process records.
"""
from .modes import InvalidModeError, Mode
from .prune import PruneState, PruneTask
from .supervisor import Supervisor, SupervisorState

__all__ = ['InvalidModeError', 'Mode', 'PruneState', 'PruneTask', 'Supervisor', 'SupervisorState']
