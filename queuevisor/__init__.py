"""
queuevisor: a process supervisor for queue runners.

It forks one process per scheduler/dispatcher role, keeps them in their own
process groups, and prunes stale heartbeat records of crashed runners.
"""

__version__ = "0.1.0"
