"""Shared fixtures: isolated settings and an in-process stand-in for forking."""

import itertools
import time

import pytest

from queuevisor.local.config import effective_settings
from queuevisor.local.database import ProcessDBManager
from queuevisor.local.runner import Dispatcher, Scheduler
from queuevisor.local.supervisor import Supervisor, process_utils


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Points every file the application touches into tmp_path."""
    monkeypatch.setattr(effective_settings, "PROCESS_DB_PATH", tmp_path / "bin" / "processes.db")
    monkeypatch.setattr(effective_settings, "PID_FILE_PATH", tmp_path / "bin" / "supervisor.pid")
    monkeypatch.setattr(effective_settings, "OVERRIDES_JSON_PATH", tmp_path / "bin" / "overrides.json")
    monkeypatch.setattr(effective_settings, "QUEUE_CONFIG_PATH", tmp_path / "config" / "queues.yml")
    monkeypatch.setattr(effective_settings, "LOG_DB_PATH", tmp_path / "logs" / "app_logs.db")
    monkeypatch.setattr(effective_settings, "LOG_DB_ENABLED", False)
    monkeypatch.setattr(effective_settings, "SUPERVISOR_TICK_INTERVAL", 0.02)
    return tmp_path


@pytest.fixture
def registry(tmp_path):
    manager = ProcessDBManager(tmp_path / "bin" / "processes.db")
    manager.initialize_database()
    return manager


class FakeProcess:
    """Behaves like a forked runner that exits as soon as it is asked to stop."""

    _pids = itertools.count(50000)

    def __init__(self, runner, refuses_to_stop=False):
        self.runner = runner
        self.pid = next(self._pids)
        self.exitcode = None
        self.refuses_to_stop = refuses_to_stop

    def is_alive(self):
        return self.exitcode is None

    def join(self, timeout=None):
        if self.exitcode is None and self.runner.is_stopping() and not self.refuses_to_stop:
            self.exitcode = 0


class SpawnRecorder:
    def __init__(self):
        self.spawned = []
        self.fail_on = None

    def __call__(self, runner, console_level=None):
        if self.fail_on is not None and len(self.spawned) == self.fail_on:
            raise OSError("Resource temporarily unavailable")
        process = FakeProcess(runner)
        self.spawned.append(runner)
        return process


@pytest.fixture
def fake_spawn(monkeypatch):
    recorder = SpawnRecorder()
    monkeypatch.setattr(process_utils, "spawn_runner", recorder)
    return recorder


STOP_LOG = []


class CountingMixin:
    def stop(self):
        STOP_LOG.append((self.name, time.monotonic()))
        super().stop()


class CountingScheduler(CountingMixin, Scheduler):
    pass


class CountingDispatcher(CountingMixin, Dispatcher):
    pass


class CountingSupervisor(Supervisor):
    scheduler_class = CountingScheduler
    dispatcher_class = CountingDispatcher


@pytest.fixture
def stop_log():
    STOP_LOG.clear()
    yield STOP_LOG
    STOP_LOG.clear()


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
