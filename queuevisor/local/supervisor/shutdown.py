import time
import logging
from typing import List, Sequence

from queuevisor.local.runner import Runner, RunnerState

log = logging.getLogger(__name__)


def stop_runners(runners: Sequence[Runner]) -> None:
    """Asks every runner to stop, in the order they were constructed."""
    for runner in runners:
        log.debug(f"Stopping {runner}...")
        runner.stop()


def wait_for_runners(runners: Sequence[Runner], timeout: float) -> List[Runner]:
    """
    Waits for the runners' processes to exit on their own and reaps them.

    Runners still alive when the timeout expires are logged and left running;
    there is no forced termination.

    :param runners: Runners that have been asked to stop.
    :param timeout: Total seconds to wait across all runners.
    :return: The runners whose process is still alive.
    """
    deadline = time.monotonic() + timeout
    alive: List[Runner] = []

    for runner in runners:
        process = runner.process
        if process is None:
            runner.state = RunnerState.TERMINATED
            continue

        process.join(max(0.0, deadline - time.monotonic()))
        if process.is_alive():
            alive.append(runner)
            continue

        runner.state = RunnerState.TERMINATED
        if process.exitcode:
            log.warning(f"{runner} exited with code {process.exitcode}.")
        else:
            log.debug(f"{runner} exited cleanly.")

    for runner in alive:
        log.warning(f"{runner} did not stop within {timeout}s. It is left running.")
    return alive
