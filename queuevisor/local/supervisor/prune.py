import logging
import threading
from enum import Enum
from typing import Callable, Optional

from queuevisor.local.executor import AppExecutor

log = logging.getLogger(__name__)


class PruneState(Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    SHUTDOWN = "shutdown"


class PruneTask:
    """
    A recurring timer that runs a callback immediately and then every
    `interval` seconds on a background thread, until shut down.

    Every cycle runs inside `executor.wrap()`. A failing cycle is logged and
    the timer keeps going; `shutdown()` cancels future cycles but lets a
    cycle already in flight finish.
    """

    def __init__(
        self,
        callback: Callable[[], object],
        interval: float,
        executor: Optional[AppExecutor] = None,
        name: str = "ProcessPruneThread",
    ) -> None:
        self.callback = callback
        self.interval = interval
        self.executor = executor or AppExecutor()
        self.name = name
        self.state = PruneState.IDLE
        self.execution_count = 0
        self.failure_count = 0

        self._state_lock = threading.Lock()
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def execute(self) -> "PruneTask":
        """Starts the timer. The first cycle runs right away."""
        with self._state_lock:
            if self.state is not PruneState.IDLE:
                raise RuntimeError(f"{self.name} has already been started.")
            self.state = PruneState.SCHEDULED
        self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self._thread.start()
        return self

    def _run(self) -> None:
        # The first cycle is never skipped, even if shutdown() came first.
        self._execute_once()
        while not self._shutdown_event.wait(self.interval):
            self._execute_once()

    def _execute_once(self) -> None:
        with self._state_lock:
            if self.state is not PruneState.SHUTDOWN:
                self.state = PruneState.EXECUTING
        try:
            with self.executor.wrap():
                self.callback()
        except Exception as e:
            self.failure_count += 1
            log.warning(f"{self.name} cycle failed ({e}). Next attempt in {self.interval}s.")
        finally:
            self.execution_count += 1
            with self._state_lock:
                if self.state is PruneState.EXECUTING:
                    self.state = PruneState.SCHEDULED

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def shutdown(self) -> None:
        """Cancels all future cycles. Does not wait for one in flight."""
        with self._state_lock:
            self.state = PruneState.SHUTDOWN
        self._shutdown_event.set()

    def wait_for_termination(self, timeout: Optional[float] = None) -> bool:
        """
        Waits for the timer thread to finish its in-flight cycle.

        :return: True if the thread has exited.
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()
