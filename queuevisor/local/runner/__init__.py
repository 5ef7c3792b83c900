"""
The runner roles managed by the supervisor.
"""

from .base import Runner, RunnerState
from .dispatcher import Dispatcher
from .scheduler import Scheduler

__all__ = ["Runner", "RunnerState", "Dispatcher", "Scheduler"]
