import os
import sys
import time
import signal
import psutil
import logging
from typing import TYPE_CHECKING, Optional

from queuevisor.log.setup import setup_logging

if TYPE_CHECKING:
    from queuevisor.local.runner import Runner

log = logging.getLogger(__name__)

REAP_INTERVAL = 0.01


#* --- Process Status ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)


def get_proc_status_string(pid: int) -> str:
    """Gets a string representation of a process status."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return "zombie"
        return "running"
    except psutil.NoSuchProcess:
        return "stopped"
    except psutil.Error:
        return "unknown"


def get_process_uptime(pid: int) -> Optional[float]:
    """Seconds since the process was created, or None if it is gone."""
    try:
        return time.time() - psutil.Process(pid).create_time()
    except psutil.Error:
        return None


#* --- Process Creation ---
class RunnerProcess:
    """
    Parent-side handle of a forked runner.

    Reaping uses non-blocking waitpid only, so a child that never exits is
    not waited on when the supervisor's interpreter shuts down.
    """

    def __init__(self, pid: int, name: str) -> None:
        self.pid = pid
        self.name = name
        self.exitcode: Optional[int] = None

    def __repr__(self) -> str:
        return f"<RunnerProcess {self.name} pid={self.pid} exitcode={self.exitcode}>"

    def poll(self) -> Optional[int]:
        """Reaps the child if it has exited. Returns its exit code, else None."""
        if self.exitcode is not None:
            return self.exitcode
        try:
            pid, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            # Reaped elsewhere; the real status is gone.
            self.exitcode = -1
            return self.exitcode
        if pid == 0:
            return None
        self.exitcode = os.waitstatus_to_exitcode(status)
        return self.exitcode

    def is_alive(self) -> bool:
        return self.poll() is None

    def join(self, timeout: Optional[float] = None) -> None:
        """Waits up to `timeout` seconds (forever if None) for the child to exit."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.poll() is None:
            if deadline is not None and time.monotonic() >= deadline:
                return
            time.sleep(REAP_INTERVAL)


def _reset_signal_handlers() -> None:
    """Drops the handlers inherited from the supervisor until the runner installs its own."""
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, signal.SIG_DFL)


def _run_in_own_process_group(runner: "Runner", console_level: int) -> int:
    """Child-side entry point: leave the parent's process group, then run."""
    _reset_signal_handlers()
    os.setpgrp()
    setup_logging(console_level)
    try:
        runner.start()
        return 0
    except Exception:
        log.exception(f"{runner.name} crashed.")
        return 1


def spawn_runner(runner: "Runner", console_level: int = logging.INFO) -> RunnerProcess:
    """
    Forks a dedicated process for a runner and places it in its own process
    group, so signals sent to the supervisor's group do not reach it.

    :param runner: The runner whose `start()` the child executes.
    :param console_level: Console log level for the child's logging setup.
    :return: The handle of the forked child, owned by the caller.
    :raises OSError: If the OS refuses to create the process.
    """
    try:
        pid = os.fork()
    except OSError as e:
        log.critical(f"Failed to start process for '{runner.name}': {e}", exc_info=True)
        raise

    if pid == 0:
        exitcode = 1
        try:
            exitcode = _run_in_own_process_group(runner, console_level)
        finally:
            logging.shutdown()
            sys.stdout.flush()
            sys.stderr.flush()
            os._exit(exitcode)

    return RunnerProcess(pid, runner.name)
