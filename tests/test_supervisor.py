"""Tests for the supervisor: runner construction, lifecycle, signals and failures."""

import json
import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from queuevisor.local.config import effective_settings
from queuevisor.local.configuration import QueueConfiguration
from queuevisor.local.runner import Dispatcher, RunnerState, Scheduler
from queuevisor.local.supervisor import (
    InvalidModeError,
    Mode,
    PruneState,
    Supervisor,
    SupervisorState,
    shutdown,
)

from conftest import CountingSupervisor, wait_until

TICK = 0.02


def started_records(caplog):
    return [r for r in caplog.records if r.getMessage().startswith("Started ")]


def stop_after(supervisor_ref, delay):
    """Calls stop() on the supervisor held in supervisor_ref once it exists and runs."""
    def target():
        wait_until(lambda: supervisor_ref and supervisor_ref[0].state is SupervisorState.RUNNING)
        time.sleep(delay)
        supervisor_ref[0].stop()
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


class TrackingSupervisor(CountingSupervisor):
    """Publishes itself on construction so tests can stop it from another thread."""
    instances = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        TrackingSupervisor.instances.append(self)


@pytest.fixture
def tracking():
    TrackingSupervisor.instances = []
    return TrackingSupervisor


# --- Runner construction ---

def test_work_mode_builds_one_dispatcher_per_queue():
    configuration = QueueConfiguration({"queues": {"default": {}, "mail": {}, "reports": {}}})
    runners = Supervisor.runners_for(Mode.WORK, configuration)

    assert len(runners) == 3
    assert all(isinstance(r, Dispatcher) for r in runners)
    assert [r.queue_name for r in runners] == ["default", "mail", "reports"]


def test_all_mode_builds_scheduler_plus_dispatchers():
    configuration = QueueConfiguration({"queues": {"default": {}, "mail": {}}, "scheduler": {}})
    runners = Supervisor.runners_for("all", configuration)

    assert len(runners) == 3
    assert sum(isinstance(r, Scheduler) for r in runners) == 1
    assert isinstance(runners[0], Scheduler)


def test_schedule_mode_ignores_queues():
    configuration = QueueConfiguration({"queues": {"a": {}, "b": {}, "c": {}}})
    runners = Supervisor.runners_for("schedule", configuration)

    assert len(runners) == 1
    assert isinstance(runners[0], Scheduler)


def test_runner_options_come_from_configuration():
    configuration = QueueConfiguration({
        "scheduler": {"polling_interval": 60},
        "queues": {"mail": {"threads": 2, "polling_interval": 0.5}},
    })
    scheduler, dispatcher = Supervisor.runners_for(Mode.ALL, configuration)

    assert scheduler.polling_interval == 60
    assert dispatcher.threads == 2
    assert dispatcher.polling_interval == 0.5


def test_invalid_mode_fails_before_anything_happens(fake_spawn, caplog):
    caplog.set_level("DEBUG")
    with pytest.raises(InvalidModeError, match="Invalid mode invalid"):
        Supervisor.start("invalid", QueueConfiguration({"queues": {"default": {}}}))

    assert fake_spawn.spawned == []
    assert started_records(caplog) == []
    assert not effective_settings.PROCESS_DB_PATH.exists()


def test_invalid_mode_does_not_read_configuration(fake_spawn):
    class ExplodingConfiguration:
        @property
        def queues(self):
            raise AssertionError("configuration was read")

        @property
        def scheduler_options(self):
            raise AssertionError("configuration was read")

    with pytest.raises(InvalidModeError):
        Supervisor.start(42, ExplodingConfiguration())


# --- Lifecycle ---

def test_work_mode_scenario_spawns_and_stops_in_order(fake_spawn, stop_log, caplog, tracking):
    caplog.set_level("INFO")
    stop_after(tracking.instances, 0.05)

    supervisor = tracking.start(
        Mode.WORK,
        QueueConfiguration({"queues": {"default": {}, "mail": {}}}),
        tick_interval=TICK,
    )

    assert [r.name for r in fake_spawn.spawned] == ["Dispatcher(default)", "Dispatcher(mail)"]
    assert len(started_records(caplog)) == 2
    assert [name for name, _ in stop_log] == ["Dispatcher(default)", "Dispatcher(mail)"]
    assert supervisor.state is SupervisorState.STOPPED
    assert all(r.state is RunnerState.TERMINATED for r in supervisor.runners)


def test_all_mode_scenario_runs_scheduler_and_dispatcher(fake_spawn, stop_log, tracking):
    stop_after(tracking.instances, 0.05)

    supervisor = tracking.start(
        Mode.ALL,
        QueueConfiguration({"queues": {"default": {}}, "scheduler": {}}),
        tick_interval=TICK,
    )

    assert len(supervisor.runners) == 2
    assert [r.kind for r in fake_spawn.spawned] == ["Scheduler", "Dispatcher"]
    assert [name for name, _ in stop_log] == ["Scheduler", "Dispatcher(default)"]


def test_runners_get_supervisor_pid_and_registry(fake_spawn, stop_log, tracking):
    stop_after(tracking.instances, 0.02)
    supervisor = tracking.start(Mode.WORK, QueueConfiguration({"queues": {"default": {}}}), tick_interval=TICK)

    runner = supervisor.runners[0]
    assert runner.supervisor_pid == os.getpid()
    assert runner.registry is supervisor.registry
    assert runner.pid == runner.process.pid


def test_wait_loop_exits_within_a_tick_of_stop(fake_spawn, stop_log, tracking):
    stop_requested = []

    def stopper():
        wait_until(lambda: tracking.instances and tracking.instances[0].state is SupervisorState.RUNNING)
        time.sleep(0.05)
        stop_requested.append(time.monotonic())
        tracking.instances[0].stop()

    threading.Thread(target=stopper, daemon=True).start()
    tracking.start(Mode.WORK, QueueConfiguration({"queues": {"default": {}}}), tick_interval=TICK)

    first_runner_stop = stop_log[0][1]
    assert first_runner_stop - stop_requested[0] < TICK + 0.5


def test_stop_is_idempotent_under_concurrent_calls():
    supervisor = Supervisor([], tick_interval=TICK)
    barrier = threading.Barrier(16)

    def hammer():
        barrier.wait()
        for _ in range(50):
            supervisor.stop()

    threads = [threading.Thread(target=hammer) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert supervisor.state is SupervisorState.STOPPING
    assert supervisor.is_stopping()


def test_stopping_is_terminal():
    supervisor = Supervisor([], tick_interval=TICK)
    assert supervisor.state is SupervisorState.INITIALIZING

    supervisor.stop()
    supervisor._running = True
    assert supervisor.state is SupervisorState.STOPPING


def test_every_runner_is_stopped_exactly_once(fake_spawn, stop_log, tracking):
    stop_after(tracking.instances, 0.02)
    # Extra stop calls on the supervisor must not stop the runners again.
    supervisor = tracking.start(
        Mode.ALL,
        QueueConfiguration({"queues": {"default": {}, "mail": {}, "bulk": {}}}),
        tick_interval=TICK,
    )
    supervisor.stop()
    supervisor.stop()

    names = [name for name, _ in stop_log]
    assert names == ["Scheduler", "Dispatcher(default)", "Dispatcher(mail)", "Dispatcher(bulk)"]


def test_stop_before_run_still_shuts_down_cleanly(fake_spawn, stop_log):
    supervisor = CountingSupervisor(
        CountingSupervisor.runners_for(Mode.WORK, QueueConfiguration({"queues": {"default": {}}})),
        tick_interval=TICK,
    )
    supervisor.stop()
    supervisor.run()

    assert supervisor.state is SupervisorState.STOPPED
    assert [name for name, _ in stop_log] == ["Dispatcher(default)"]
    assert supervisor.prune_task.state is PruneState.SHUTDOWN


def test_prune_task_runs_at_startup_and_is_shut_down(fake_spawn, stop_log, tracking):
    stop_after(tracking.instances, 0.02)
    supervisor = tracking.start(Mode.WORK, QueueConfiguration({"queues": {"default": {}}}), tick_interval=TICK)

    assert supervisor.prune_task.execution_count >= 1
    assert supervisor.prune_task.state is PruneState.SHUTDOWN
    assert not supervisor.prune_task.is_running


def test_prune_task_removes_stale_records(fake_spawn, stop_log, tracking, registry):
    stale_id = registry.register("Dispatcher", pid=999999)
    registry.execute("UPDATE processes SET last_heartbeat_at = ? WHERE id = ?", (time.time() - 3600, stale_id))
    fresh_id = registry.register("Dispatcher", pid=os.getpid())

    stop_after(tracking.instances, 0.02)
    tracking.start(
        Mode.WORK,
        QueueConfiguration({"queues": {"default": {}}}),
        registry=registry,
        tick_interval=TICK,
        alive_threshold=300,
    )

    assert [r.id for r in registry.fetch_processes()] == [fresh_id]


def test_pid_file_is_written_while_running_and_removed_after(fake_spawn, stop_log, tracking):
    seen = {}

    def stopper():
        wait_until(lambda: effective_settings.PID_FILE_PATH.exists())
        seen.update(json.loads(effective_settings.PID_FILE_PATH.read_text()))
        tracking.instances[0].stop()

    threading.Thread(target=stopper, daemon=True).start()
    supervisor = tracking.start(Mode.WORK, QueueConfiguration({"queues": {"default": {}}}), tick_interval=TICK)

    assert seen["supervisor"] == os.getpid()
    assert seen["Dispatcher(default)"] == supervisor.runners[0].pid
    assert not effective_settings.PID_FILE_PATH.exists()


def test_terminate_signal_stops_everything(fake_spawn, stop_log, tracking):
    previous = signal.getsignal(signal.SIGTERM)

    def send_sigterm():
        wait_until(lambda: tracking.instances and tracking.instances[0].state is SupervisorState.RUNNING)
        time.sleep(0.05)
        os.kill(os.getpid(), signal.SIGTERM)

    threading.Thread(target=send_sigterm, daemon=True).start()
    supervisor = tracking.start(
        Mode.ALL,
        QueueConfiguration({"queues": {"default": {}}}),
        tick_interval=TICK,
    )

    assert supervisor.state is SupervisorState.STOPPED
    assert [name for name, _ in stop_log] == ["Scheduler", "Dispatcher(default)"]
    assert supervisor.prune_task.state is PruneState.SHUTDOWN
    assert signal.getsignal(signal.SIGTERM) == previous


def test_interrupt_signal_maps_to_stop(fake_spawn, stop_log, tracking):
    def send_sigint():
        wait_until(lambda: tracking.instances and tracking.instances[0].state is SupervisorState.RUNNING)
        os.kill(os.getpid(), signal.SIGINT)

    threading.Thread(target=send_sigint, daemon=True).start()
    supervisor = tracking.start(Mode.SCHEDULE, QueueConfiguration({}), tick_interval=TICK)

    assert supervisor.state is SupervisorState.STOPPED
    assert [name for name, _ in stop_log] == ["Scheduler"]


def test_signal_handler_only_flips_the_stop_flag(fake_spawn):
    supervisor = Supervisor([], tick_interval=TICK)
    supervisor._handle_signal(signal.SIGTERM, None)

    assert supervisor.state is SupervisorState.STOPPING
    assert fake_spawn.spawned == []


# --- Failures ---

def test_spawn_failure_is_fatal_and_cleans_up(fake_spawn, stop_log, caplog):
    caplog.set_level("INFO")
    fake_spawn.fail_on = 1
    with pytest.raises(OSError, match="Resource temporarily unavailable"):
        CountingSupervisor.start(
            Mode.WORK,
            QueueConfiguration({"queues": {"default": {}, "mail": {}, "bulk": {}}}),
            tick_interval=TICK,
        )

    assert [r.name for r in fake_spawn.spawned] == ["Dispatcher(default)"]
    assert len(started_records(caplog)) == 1
    assert [name for name, _ in stop_log] == ["Dispatcher(default)", "Dispatcher(mail)", "Dispatcher(bulk)"]
    assert not effective_settings.PID_FILE_PATH.exists()


def test_spawn_failure_leaves_supervisor_stopped(fake_spawn):
    fake_spawn.fail_on = 0
    supervisor = Supervisor(
        Supervisor.runners_for(Mode.WORK, QueueConfiguration({"queues": {"default": {}}})),
        tick_interval=TICK,
    )
    with pytest.raises(OSError):
        supervisor.run()

    assert supervisor.state is SupervisorState.STOPPED
    assert supervisor.prune_task.state is PruneState.SHUTDOWN


def test_prune_errors_do_not_affect_supervisor(fake_spawn, stop_log, tracking):
    class BrokenRegistry:
        def initialize_database(self):
            pass

        def prune(self, threshold):
            raise RuntimeError("database is locked")

    stop_after(tracking.instances, 0.05)
    supervisor = tracking.start(
        Mode.WORK,
        QueueConfiguration({"queues": {"default": {}}}),
        registry=BrokenRegistry(),
        tick_interval=TICK,
    )

    assert supervisor.state is SupervisorState.STOPPED
    assert supervisor.prune_task.failure_count >= 1
    assert [name for name, _ in stop_log] == ["Dispatcher(default)"]


def test_runner_that_refuses_to_stop_is_left_alone(monkeypatch, stop_log, tracking, caplog):
    from conftest import FakeProcess
    from queuevisor.local.supervisor import process_utils

    monkeypatch.setattr(process_utils, "spawn_runner", lambda runner, console_level=None: FakeProcess(runner, refuses_to_stop=True))
    stop_after(tracking.instances, 0.02)
    supervisor = tracking.start(
        Mode.WORK,
        QueueConfiguration({"queues": {"default": {}}}),
        tick_interval=TICK,
        stop_grace_period=0.05,
    )

    runner = supervisor.runners[0]
    assert runner.state is RunnerState.STOPPING
    assert runner.process.is_alive()
    assert any("did not stop" in r.getMessage() for r in caplog.records)


def test_unexpected_runner_exit_is_logged(fake_spawn, stop_log, tracking, caplog):
    def crash_then_stop():
        wait_until(lambda: tracking.instances and tracking.instances[0].state is SupervisorState.RUNNING)
        supervisor = tracking.instances[0]
        supervisor.runners[0].process.exitcode = 1
        wait_until(lambda: supervisor.runners[0].state is RunnerState.TERMINATED)
        supervisor.stop()

    threading.Thread(target=crash_then_stop, daemon=True).start()
    tracking.start(Mode.WORK, QueueConfiguration({"queues": {"default": {}}}), tick_interval=TICK)

    assert any("exited unexpectedly with code 1" in r.getMessage() for r in caplog.records)


def test_prune_task_is_shut_down_before_waiting_for_runners(fake_spawn, stop_log, tracking, monkeypatch):
    prune_states = []
    wait_for_runners = shutdown.wait_for_runners

    def recording_wait(runners, timeout):
        prune_states.append(tracking.instances[0].prune_task.state)
        return wait_for_runners(runners, timeout)

    monkeypatch.setattr(shutdown, "wait_for_runners", recording_wait)
    stop_after(tracking.instances, 0.02)
    tracking.start(Mode.WORK, QueueConfiguration({"queues": {"default": {}}}), tick_interval=TICK)

    assert prune_states == [PruneState.SHUTDOWN]


STUBBORN_SUPERVISOR = """
import os
import signal
import sys
import time

from queuevisor.local.configuration import QueueConfiguration
from queuevisor.local.runner import Dispatcher
from queuevisor.local.supervisor import Supervisor


class StubbornDispatcher(Dispatcher):
    def start(self):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        with open(sys.argv[1] + ".tmp", "w") as f:
            f.write(str(os.getpid()))
        os.replace(sys.argv[1] + ".tmp", sys.argv[1])
        while True:
            time.sleep(0.1)


class StubbornSupervisor(Supervisor):
    dispatcher_class = StubbornDispatcher


StubbornSupervisor.start("work", QueueConfiguration(), tick_interval=0.02, stop_grace_period=0.5)
print("supervisor returned", flush=True)
"""


@pytest.mark.skipif(sys.platform == "win32", reason="runners are forked")
def test_supervisor_process_exits_when_a_runner_ignores_stop(tmp_path):
    runner_pid_file = tmp_path / "runner.pid"
    package_root = str(Path(__file__).resolve().parents[1])
    env = dict(os.environ, QUEUEVISOR_HOME=str(tmp_path), QUEUEVISOR_LOG_DB="false")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [package_root, env.get("PYTHONPATH")]))

    process = subprocess.Popen(
        [sys.executable, "-c", STUBBORN_SUPERVISOR, str(runner_pid_file)],
        cwd=tmp_path,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    try:
        assert wait_until(runner_pid_file.exists, timeout=15)
        process.send_signal(signal.SIGTERM)
        output, _ = process.communicate(timeout=15)

        assert process.returncode == 0
        assert "did not stop within 0.5s" in output
        assert "supervisor returned" in output
    finally:
        if process.poll() is None:
            process.kill()
            process.communicate()
        if runner_pid_file.exists():
            try:
                os.kill(int(runner_pid_file.read_text()), signal.SIGKILL)
            except ProcessLookupError:
                pass
