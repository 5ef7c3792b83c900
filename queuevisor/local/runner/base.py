import os
import time
import signal
import socket
import sqlite3
import logging
import threading
import multiprocessing
from enum import Enum
from typing import Any, Dict, Optional

import setproctitle

from queuevisor.local.config import effective_settings as config
from queuevisor.local.database import ProcessDBManager
from queuevisor.local.executor import AppExecutor

log = logging.getLogger(__name__)

# Runners are forked so that the stop event created here is shared with the child.
FORK_CONTEXT = multiprocessing.get_context("fork")


class RunnerState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class Runner:
    """
    One spawnable unit of work, run by the supervisor in its own process.

    `start()` runs in the child and blocks until the runner is asked to stop.
    `stop()` may be called from any process that holds a copy of the handle
    made before the fork (normally the supervisor): it sets a shared event
    that the child checks at least every `SUPERVISOR_TICK_INTERVAL` seconds.
    """

    kind = "Runner"

    def __init__(
        self,
        polling_interval: float = 1,
        batch_size: int = 500,
        registry: Optional[ProcessDBManager] = None,
        executor: Optional[AppExecutor] = None,
        heartbeat_interval: Optional[float] = None,
    ) -> None:
        self.polling_interval = polling_interval
        self.batch_size = batch_size
        self.registry = registry
        self.executor = executor or AppExecutor()
        self.heartbeat_interval = heartbeat_interval

        self.supervisor_pid: Optional[int] = None
        self.process: Optional[Any] = None
        self.state = RunnerState.STARTING
        self.process_id: Optional[int] = None

        self._stop_event = FORK_CONTEXT.Event()
        self._signalled = False

    @property
    def name(self) -> str:
        return self.kind

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def metadata(self) -> Dict[str, Any]:
        return {"polling_interval": self.polling_interval, "batch_size": self.batch_size}

    def __str__(self) -> str:
        return f"{self.name} (PID: {self.pid})" if self.pid else self.name

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name} state={self.state.value}>"

    #* --- Child side ---
    def start(self) -> None:
        """Runs the polling loop in the current process until stopped."""
        self._install_signal_handlers()
        setproctitle.setproctitle(f"{config.PROCESS_TITLE_PREFIX} - {self.name}")
        self.state = RunnerState.RUNNING
        self._register()

        heartbeat_thread = threading.Thread(target=self._heartbeat_loop, daemon=True, name=f"{self.kind}HeartbeatThread")
        heartbeat_thread.start()
        log.info(f"{self.name} started in process {os.getpid()}.")

        try:
            while not self.is_stopping():
                self._poll_once()
                self._interruptible_sleep(self.polling_interval)
        finally:
            # Wakes the heartbeat thread when the stop came from a signal.
            self._stop_event.set()
            heartbeat_thread.join(timeout=5)
            self._deregister()
            self.state = RunnerState.TERMINATED
            log.info(f"{self.name} stopped.")

    def poll(self) -> int:
        """
        Performs one unit of the role's work. Overridden by host applications.

        :return: The number of items handled.
        """
        return 0

    def is_stopping(self) -> bool:
        return self._signalled or self._stop_event.is_set()

    def _poll_once(self) -> None:
        try:
            with self.executor.wrap():
                handled = self.poll()
            if handled:
                log.debug(f"{self.name} handled {handled} item(s).")
        except Exception as e:
            log.error(f"{self.name} poll failed: {e}")

    def _interruptible_sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.is_stopping():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, config.SUPERVISOR_TICK_INTERVAL))

    def _install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        # Only flips a flag; the polling loop notices it within one tick.
        self._signalled = True

    def _register(self) -> None:
        if self.registry is None:
            return
        try:
            self.process_id = self.registry.register(
                kind=self.kind,
                pid=os.getpid(),
                hostname=socket.gethostname(),
                supervisor_pid=self.supervisor_pid,
                metadata=self.metadata,
            )
        except sqlite3.Error as e:
            log.error(f"{self.name} could not register in the process registry: {e}")

    def _deregister(self) -> None:
        if self.registry is None or self.process_id is None:
            return
        try:
            self.registry.deregister(self.process_id)
        except sqlite3.Error as e:
            log.error(f"{self.name} could not deregister from the process registry: {e}")
        self.process_id = None

    def _heartbeat_loop(self) -> None:
        interval = self.heartbeat_interval or config.PROCESS_HEARTBEAT_INTERVAL
        while not self._stop_event.wait(interval):
            if self.registry is None:
                continue
            try:
                if self.process_id is None or not self.registry.heartbeat(self.process_id):
                    log.warning(f"{self.name} has no process record (pruned?). Registering again.")
                    self._register()
            except sqlite3.Error as e:
                log.error(f"{self.name} heartbeat failed: {e}")

    #* --- Supervisor side ---
    def stop(self) -> None:
        """Asks the runner to stop. Safe to call from another process or thread."""
        if self.state in (RunnerState.STARTING, RunnerState.RUNNING):
            self.state = RunnerState.STOPPING
        self._stop_event.set()
