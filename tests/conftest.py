import sys
import time
import shlex
import threading
import subprocess
from typing import Callable, List

import pytest

from appstarter.events import EventHook
from appstarter.models import CommandConfig, CommandStatus
from appstarter.supervisor import ProcessManager

SLEEP_FOREVER = "import time; time.sleep(60)"


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    """Polls `predicate` until it is true or `timeout` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def python_command(code: str, **kwargs) -> CommandConfig:
    """A command that runs `code` with the current interpreter."""
    quoted = subprocess.list2cmdline([code]) if sys.platform == "win32" else shlex.quote(code)
    kwargs.setdefault("name", "py")
    kwargs.setdefault("restart_delay_seconds", 0)
    return CommandConfig(command=sys.executable, arguments=f"-c {quoted}", **kwargs)


class EventRecorder:
    """Collects every event a ProcessManager publishes."""

    def __init__(self, manager) -> None:
        self._lock = threading.Lock()
        self.started: List[CommandConfig] = []
        self.stopped: List[CommandConfig] = []
        self.exited: List[tuple] = []
        self.output: List[tuple] = []
        manager.process_started.subscribe(lambda c: self._add(self.started, c))
        manager.process_stopped.subscribe(lambda c: self._add(self.stopped, c))
        manager.process_exited.subscribe(lambda c, code: self._add(self.exited, (c, code)))
        manager.output_received.subscribe(lambda c, line, err: self._add(self.output, (c, line, err)))

    def _add(self, target: list, item) -> None:
        with self._lock:
            target.append(item)

    def lines(self, is_error: bool = False) -> List[str]:
        with self._lock:
            return [line for _, line, err in self.output if err is is_error]


class FakeProcessManager:
    """Stands in for ProcessManager where no real process is needed."""

    def __init__(self, failing_ids=()) -> None:
        self.failing_ids = set(failing_ids)
        self.started: List[CommandConfig] = []
        self.stopped: List[CommandConfig] = []
        self.running = set()
        self.cancelled_restarts: List[str] = []
        self._lock = threading.Lock()
        self.process_started = EventHook("process_started")
        self.process_stopped = EventHook("process_stopped")
        self.process_exited = EventHook("process_exited")
        self.output_received = EventHook("output_received")
        self.stop_all_calls = 0
        self.shutdown_calls = 0

    def start(self, command: CommandConfig) -> bool:
        with self._lock:
            self.started.append(command)
        if command.id in self.failing_ids:
            raise RuntimeError(f"cannot start {command.name}")
        with self._lock:
            if command.id in self.running:
                return False
            self.running.add(command.id)
        command.status = CommandStatus.RUNNING
        self.process_started.emit(command)
        return True

    def stop(self, command: CommandConfig, timeout_ms=None) -> bool:
        with self._lock:
            if command.id not in self.running:
                return False
            self.running.discard(command.id)
            self.stopped.append(command)
        command.status = CommandStatus.STOPPED
        self.process_stopped.emit(command)
        return True

    def is_running(self, command_id: str) -> bool:
        with self._lock:
            return command_id in self.running

    def cancel_pending_restart(self, command_id: str) -> bool:
        with self._lock:
            self.cancelled_restarts.append(command_id)
        return False

    def stop_all(self) -> None:
        self.stop_all_calls += 1

    def shutdown(self) -> None:
        self.shutdown_calls += 1

    def started_names(self) -> List[str]:
        with self._lock:
            return [c.name for c in self.started]


@pytest.fixture
def manager():
    process_manager = ProcessManager()
    yield process_manager
    process_manager.shutdown()


@pytest.fixture
def recorder(manager):
    return EventRecorder(manager)


@pytest.fixture
def fake_manager():
    return FakeProcessManager()
