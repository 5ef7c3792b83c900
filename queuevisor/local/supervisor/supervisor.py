import os
import time
import signal
import logging
import threading
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from queuevisor.local.config import effective_settings as config
from queuevisor.local.configuration import QueueConfiguration
from queuevisor.local.database import ProcessDBManager
from queuevisor.local.executor import AppExecutor
from queuevisor.local.runner import Dispatcher, Runner, RunnerState, Scheduler
from queuevisor.local.supervisor import persistence, process_utils, shutdown
from queuevisor.local.supervisor.modes import Mode
from queuevisor.local.supervisor.prune import PruneTask

log = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SupervisorState(Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Supervisor:
    """
    Forks one process per runner, waits until asked to stop, then stops the
    runners and the process prune task.

    Runners are spawned and stopped in the order they were constructed. The
    supervisor's own process only runs the wait loop and the prune timer.
    """

    scheduler_class = Scheduler
    dispatcher_class = Dispatcher

    @classmethod
    def start(
        cls,
        mode: Union[Mode, str] = Mode.ALL,
        configuration: Optional[QueueConfiguration] = None,
        **options,
    ) -> "Supervisor":
        """
        Builds the runners for `mode`, runs the supervisor and blocks until
        it has shut down.

        :raises InvalidModeError: Before anything is constructed, for an unknown mode.
        """
        mode = Mode.parse(mode)
        if configuration is None:
            configuration = QueueConfiguration()

        supervisor = cls(cls.runners_for(mode, configuration), **options)
        supervisor.run()
        return supervisor

    @classmethod
    def runners_for(cls, mode: Union[Mode, str], configuration: QueueConfiguration) -> List[Runner]:
        builders = {
            Mode.SCHEDULE: lambda: [cls.scheduler(configuration)],
            Mode.WORK: lambda: cls.dispatchers(configuration),
            Mode.ALL: lambda: [cls.scheduler(configuration)] + cls.dispatchers(configuration),
        }
        return builders[Mode.parse(mode)]()

    @classmethod
    def dispatchers(cls, configuration: QueueConfiguration) -> List[Runner]:
        return [cls.dispatcher_class(**queue_options) for queue_options in configuration.queues.values()]

    @classmethod
    def scheduler(cls, configuration: QueueConfiguration) -> Runner:
        return cls.scheduler_class(**configuration.scheduler_options)

    def __init__(
        self,
        runners: Iterable[Runner],
        registry: Optional[ProcessDBManager] = None,
        executor: Optional[AppExecutor] = None,
        tick_interval: Optional[float] = None,
        alive_threshold: Optional[float] = None,
        stop_grace_period: Optional[float] = None,
        console_level: int = logging.INFO,
    ) -> None:
        self.runners: List[Runner] = list(runners)
        self.registry = registry or ProcessDBManager(config.PROCESS_DB_PATH)
        self.executor = executor or AppExecutor()
        self.tick_interval = tick_interval if tick_interval is not None else config.SUPERVISOR_TICK_INTERVAL
        self.alive_threshold = alive_threshold if alive_threshold is not None else config.PROCESS_ALIVE_THRESHOLD
        self.stop_grace_period = stop_grace_period if stop_grace_period is not None else config.RUNNER_STOP_GRACE_PERIOD
        self.console_level = console_level
        self.pid = os.getpid()

        self.prune_task: Optional[PruneTask] = None
        # Acquired once by the first stop() and never released.
        self._stop_latch = threading.Lock()
        self._running = False
        self._stopped = False
        self._previous_handlers: Dict[int, object] = {}

    @property
    def state(self) -> SupervisorState:
        if self._stopped:
            return SupervisorState.STOPPED
        if self._stop_latch.locked():
            return SupervisorState.STOPPING
        if self._running:
            return SupervisorState.RUNNING
        return SupervisorState.INITIALIZING

    def is_stopping(self) -> bool:
        return self._stop_latch.locked()

    def stop(self) -> None:
        """
        Requests shutdown. Idempotent, never blocks and does no logging, so it
        is safe to call from a signal handler or from several threads at once.
        """
        self._stop_latch.acquire(blocking=False)

    def run(self) -> None:
        """Spawns the runners and blocks until the supervisor is stopped."""
        self.pid = os.getpid()
        self._trap_signals()
        try:
            self._running = True
            self.registry.initialize_database()
            self._start_process_prune()

            try:
                self._start_runners()
            except Exception:
                log.critical("Runner startup failed. Stopping the runners already started.")
                self.stop()
                self._shutdown()
                raise

            persistence.write_pid_file(self)
            log.info(f"Supervisor (PID: {self.pid}) is running {len(self.runners)} runner(s).")

            self._wait_until_stopping()
            log.info("Stop requested. Shutting down runners...")
            self._shutdown()
            log.info("Supervisor stopped.")
        finally:
            self.stop()
            self._stopped = True
            self._restore_signals()

    #* --- Signals ---
    def _trap_signals(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            log.debug("Not on the main thread; signal handlers are not installed.")
            return
        for signum in TERMINATION_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        self.stop()

    def _restore_signals(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    #* --- Runners ---
    def _start_runners(self) -> None:
        for runner in self.runners:
            runner.supervisor_pid = self.pid
            if runner.registry is None:
                runner.registry = self.registry

            runner.process = process_utils.spawn_runner(runner, self.console_level)
            runner.state = RunnerState.RUNNING
            log.info(f"Started {runner}")

    def _wait_until_stopping(self) -> None:
        while not self.is_stopping():
            time.sleep(self.tick_interval)
            self._check_runners()

    def _check_runners(self) -> None:
        """Logs runners whose process exited while the supervisor was running."""
        for runner in self.runners:
            if runner.state is RunnerState.RUNNING and runner.process is not None and not runner.process.is_alive():
                runner.state = RunnerState.TERMINATED
                log.warning(
                    f"{runner} exited unexpectedly with code {runner.process.exitcode}. "
                    "Its process record will be pruned once its heartbeat goes stale."
                )

    def _shutdown(self) -> None:
        shutdown.stop_runners(self.runners)
        self._stop_process_prune()
        shutdown.wait_for_runners(self.runners, self.stop_grace_period)
        persistence.remove_pid_file(self)

    #* --- Process prune ---
    def _start_process_prune(self) -> None:
        self.prune_task = PruneTask(self._prune_dead_processes, interval=self.alive_threshold, executor=self.executor)
        self.prune_task.execute()

    def _stop_process_prune(self) -> None:
        if self.prune_task is None:
            return
        self.prune_task.shutdown()
        if not self.prune_task.wait_for_termination(self.stop_grace_period):
            log.warning("Process prune task is still finishing its current cycle.")

    def _prune_dead_processes(self) -> int:
        return self.registry.prune(self.alive_threshold)
