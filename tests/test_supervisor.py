import os
import sys
import time
import threading

import psutil
import pytest

from appstarter.config import effective_settings
from appstarter.models import CommandConfig, CommandStatus, RestartPolicy
from conftest import SLEEP_FOREVER, python_command, wait_for

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")


def test_start_and_stop_long_running_process(manager, recorder):
    command = python_command(SLEEP_FOREVER)

    assert manager.start(command) is True
    assert manager.is_running(command.id)
    assert manager.get_status(command.id) is CommandStatus.RUNNING
    assert command.process_id is not None
    assert command.started_at is not None
    assert command.last_run_at is not None
    pid = command.process_id

    assert manager.stop(command, timeout_ms=3000) is True
    assert not manager.is_running(command.id)
    assert command.status is CommandStatus.STOPPED
    assert command.process_id is None
    assert command.started_at is None
    assert manager.get_status(command.id) is CommandStatus.STOPPED
    assert wait_for(lambda: not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE)
    assert len(recorder.started) == 1
    assert len(recorder.stopped) == 1


def test_concurrent_starts_spawn_exactly_one_process(manager, recorder):
    command = python_command(SLEEP_FOREVER)
    barrier = threading.Barrier(2)
    results = []

    def _start():
        barrier.wait()
        results.append(manager.start(command))

    threads = [threading.Thread(target=_start) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == [False, True]
    assert len(recorder.started) == 1
    assert manager.get_running_count() == 1


def test_start_while_running_returns_false(manager, recorder):
    command = python_command(SLEEP_FOREVER)
    assert manager.start(command)
    pid = command.process_id

    assert manager.start(command) is False
    assert command.process_id == pid
    assert len(recorder.started) == 1


def test_stop_untracked_command_has_no_side_effects(manager, recorder):
    command = python_command(SLEEP_FOREVER)

    assert manager.stop(command) is False
    assert command.status is CommandStatus.STOPPED
    assert recorder.stopped == []
    assert recorder.exited == []


def test_spawn_failure_marks_command_failed(manager, recorder):
    command = CommandConfig(name="missing", command="/definitely/not/a/real/binary")

    assert manager.start(command) is False
    assert command.status is CommandStatus.FAILED
    assert not manager.is_running(command.id)
    assert recorder.started == []


def test_unbalanced_quotes_are_a_spawn_failure(manager):
    command = CommandConfig(name="bad-args", command=sys.executable, arguments='-c "print(1)')
    if sys.platform == "win32":
        pytest.skip("Windows passes the command line through unparsed")

    assert manager.start(command) is False
    assert command.status is CommandStatus.FAILED


def test_exit_event_carries_exit_code(manager, recorder):
    command = python_command("import sys; sys.exit(7)")

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 1)

    exited_command, exit_code = recorder.exited[0]
    assert exited_command is command
    assert exit_code == 7
    assert command.status is CommandStatus.FAILED
    assert command.process_id is None
    assert not manager.is_running(command.id)


def test_clean_exit_sets_stopped(manager, recorder):
    command = python_command("pass")

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 1)
    assert recorder.exited[0][1] == 0
    assert command.status is CommandStatus.STOPPED


def test_on_failure_does_not_restart_after_clean_exit(manager, recorder):
    command = python_command("pass", restart_policy=RestartPolicy.ON_FAILURE, max_restart_attempts=3)

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 1)
    time.sleep(0.5)

    assert len(recorder.started) == 1
    assert command.restart_count == 0
    assert not manager.has_pending_restart(command.id)
    assert command.status is CommandStatus.STOPPED


def test_on_failure_restarts_until_attempts_exhausted(manager, recorder):
    command = python_command("import sys; sys.exit(3)", restart_policy=RestartPolicy.ON_FAILURE, max_restart_attempts=2)

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 3, timeout=20)
    assert wait_for(lambda: not manager.has_pending_restart(command.id) and not manager.is_running(command.id))
    time.sleep(0.5)

    assert len(recorder.started) == 3
    assert len(recorder.exited) == 3
    assert command.restart_count == 2
    assert command.status is CommandStatus.FAILED


def test_always_policy_stops_after_max_attempts(manager, recorder):
    command = python_command("pass", restart_policy=RestartPolicy.ALWAYS, max_restart_attempts=2)

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 3, timeout=20)
    assert wait_for(lambda: command.status is CommandStatus.FAILED)
    time.sleep(0.5)

    assert len(recorder.started) == 3
    assert command.restart_count == 2
    assert not manager.is_running(command.id)


def test_none_policy_never_restarts(manager, recorder):
    command = python_command("import sys; sys.exit(1)", restart_policy=RestartPolicy.NONE)

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 1)
    time.sleep(0.3)

    assert len(recorder.started) == 1
    assert command.status is CommandStatus.FAILED


def test_explicit_start_resets_restart_counter(manager, recorder):
    command = python_command("import sys; sys.exit(1)", restart_policy=RestartPolicy.ON_FAILURE, max_restart_attempts=1)

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 2, timeout=20)
    assert wait_for(lambda: command.status is CommandStatus.FAILED and not manager.is_running(command.id))
    time.sleep(0.3)
    assert command.restart_count == 1

    assert manager.start(command)
    assert command.restart_count == 0


def test_restart_delay_is_honoured(manager, recorder):
    command = python_command("import sys; sys.exit(1)", restart_policy=RestartPolicy.ON_FAILURE, restart_delay_seconds=30)

    assert manager.start(command)
    assert wait_for(lambda: manager.has_pending_restart(command.id))
    time.sleep(0.3)

    assert len(recorder.started) == 1
    assert command.restart_count == 1


def test_explicit_stop_suppresses_restart(manager, recorder):
    command = python_command(SLEEP_FOREVER, restart_policy=RestartPolicy.ALWAYS, max_restart_attempts=5)

    assert manager.start(command)
    assert manager.stop(command, timeout_ms=3000)
    assert wait_for(lambda: len(recorder.exited) == 1)
    time.sleep(0.5)

    assert len(recorder.started) == 1
    assert not manager.is_running(command.id)
    assert not manager.has_pending_restart(command.id)
    assert command.status is CommandStatus.STOPPED


def test_unless_stopped_restarts_after_crash(manager, recorder):
    command = python_command("import sys; sys.exit(2)", restart_policy=RestartPolicy.UNLESS_STOPPED, max_restart_attempts=1)

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.started) == 2, timeout=20)


def test_stop_during_restart_delay_leaves_the_restart_alone(manager, recorder):
    command = python_command(
        "import sys; sys.exit(1)", restart_policy=RestartPolicy.ALWAYS,
        restart_delay_seconds=0.5, max_restart_attempts=1,
    )

    assert manager.start(command)
    assert wait_for(lambda: manager.has_pending_restart(command.id))

    assert manager.stop(command) is False
    assert recorder.stopped == []
    assert wait_for(lambda: len(recorder.started) == 2)
    assert command.restart_count == 1


def test_cancel_pending_restart(manager, recorder):
    command = python_command("import sys; sys.exit(1)", restart_policy=RestartPolicy.ALWAYS, restart_delay_seconds=0.5)

    assert manager.start(command)
    assert wait_for(lambda: manager.has_pending_restart(command.id))

    assert manager.cancel_pending_restart(command.id) is True
    assert manager.cancel_pending_restart(command.id) is False
    time.sleep(1.0)

    assert len(recorder.started) == 1
    assert not manager.is_running(command.id)


def test_started_event_precedes_exit_and_output(manager):
    events = []
    manager.process_started.subscribe(lambda c: events.append("started"))
    manager.output_received.subscribe(lambda c, line, err: events.append("output"))
    manager.process_exited.subscribe(lambda c, code: events.append("exited"))

    for _ in range(5):
        events.clear()
        assert manager.start(python_command("print('x')"))
        assert wait_for(lambda: "exited" in events)
        assert events == ["started", "output", "exited"]


@posix_only
def test_stop_force_kills_process_ignoring_sigterm(manager, recorder):
    code = (
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(60)"
    )
    command = python_command(code)

    assert manager.start(command)
    assert wait_for(lambda: "ready" in recorder.lines())
    pid = command.process_id

    started_at = time.monotonic()
    assert manager.stop(command, timeout_ms=300) is True
    assert time.monotonic() - started_at < 5

    assert not manager.is_running(command.id)
    assert command.status is CommandStatus.STOPPED
    assert wait_for(lambda: len(recorder.exited) == 1)
    assert recorder.exited[0][1] != 0
    assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE


@posix_only
def test_stop_kills_child_processes(manager, recorder):
    code = (
        "import subprocess, sys, time; "
        f"p = subprocess.Popen([sys.executable, '-c', {SLEEP_FOREVER!r}]); "
        "print(p.pid, flush=True); time.sleep(60)"
    )
    command = python_command(code)

    assert manager.start(command)
    assert wait_for(lambda: recorder.lines())
    child_pid = int(recorder.lines()[0])
    assert psutil.pid_exists(child_pid)

    assert manager.stop(command, timeout_ms=2000)
    assert wait_for(lambda: not psutil.pid_exists(child_pid) or psutil.Process(child_pid).status() == psutil.STATUS_ZOMBIE)


def _access_denied(self, *args, **kwargs):
    raise psutil.AccessDenied(pid=self.pid)


def _assert_stopped_and_gone(manager, command, pid):
    assert not manager.is_running(command.id)
    assert command.status is CommandStatus.STOPPED
    assert command.process_id is None
    assert not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE


@posix_only
def test_stop_escalates_when_sigterm_is_denied(manager, recorder, monkeypatch):
    command = python_command(SLEEP_FOREVER)
    assert manager.start(command)
    pid = command.process_id
    monkeypatch.setattr(psutil.Process, "terminate", _access_denied)

    assert manager.stop(command, timeout_ms=300) is True

    _assert_stopped_and_gone(manager, command, pid)
    assert wait_for(lambda: len(recorder.exited) == 1)

    assert manager.start(command)
    assert command.process_id != pid
    assert manager.get_running_count() == 1


@posix_only
def test_stop_uses_fallback_kill_when_psutil_kill_is_denied(manager, recorder, monkeypatch):
    command = python_command(SLEEP_FOREVER)
    assert manager.start(command)
    pid = command.process_id
    monkeypatch.setattr(psutil.Process, "terminate", _access_denied)
    monkeypatch.setattr(psutil.Process, "kill", _access_denied)

    assert manager.stop(command, timeout_ms=300) is True

    _assert_stopped_and_gone(manager, command, pid)
    assert wait_for(lambda: len(recorder.exited) == 1)
    assert recorder.exited[0][1] != 0


@posix_only
def test_stop_kills_when_the_process_tree_cannot_be_read(manager, recorder, monkeypatch):
    command = python_command(SLEEP_FOREVER)
    assert manager.start(command)
    pid = command.process_id
    monkeypatch.setattr(psutil.Process, "children", _access_denied)

    assert manager.stop(command, timeout_ms=300) is True

    _assert_stopped_and_gone(manager, command, pid)


def test_stop_all_stops_every_tracked_process(manager, recorder):
    commands = [python_command(SLEEP_FOREVER, name=f"sleeper-{i}") for i in range(3)]
    for command in commands:
        assert manager.start(command)
    assert manager.get_running_count() == 3

    manager.stop_all()

    assert manager.get_running_count() == 0
    assert len(recorder.stopped) == 3
    assert wait_for(lambda: len(recorder.exited) == 3)
    assert all(c.status is CommandStatus.STOPPED for c in commands)


def test_stop_all_runs_every_stop_at_once(manager, recorder, monkeypatch):
    count = 12
    commands = [python_command(SLEEP_FOREVER, name=f"sleeper-{i}") for i in range(count)]
    for command in commands:
        assert manager.start(command)

    # Every stop must be in flight before any may proceed.
    barrier = threading.Barrier(count, timeout=10)
    real_stop = manager.stop

    def _gated_stop(command, timeout_ms=None):
        barrier.wait()
        return real_stop(command, timeout_ms)

    monkeypatch.setattr(manager, "stop", _gated_stop)
    manager.stop_all()

    assert not barrier.broken
    assert manager.get_running_count() == 0
    assert len(recorder.stopped) == count


def test_stop_all_with_nothing_running(manager, recorder):
    manager.stop_all()
    assert recorder.stopped == []


def test_restart_spawns_a_new_process(manager, recorder, monkeypatch):
    monkeypatch.setattr(effective_settings, "RESTART_PAUSE_SECONDS", 0)
    command = python_command(SLEEP_FOREVER)

    assert manager.start(command)
    first_pid = command.process_id

    assert manager.restart(command) is True
    assert manager.is_running(command.id)
    assert command.process_id != first_pid
    assert len(recorder.started) == 2
    assert len(recorder.stopped) == 1


def test_output_lines_are_published(manager, recorder):
    code = "import sys; print('hello'); print('oops', file=sys.stderr); print(''); print('bye')"
    command = python_command(code)

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 1)

    assert recorder.lines(is_error=False) == ["hello", "bye"]
    assert recorder.lines(is_error=True) == ["oops"]


def test_environment_overrides_are_applied(manager, recorder):
    command = python_command(
        "import os; print(os.environ['APPSTARTER_TEST_VAR'])",
        environment_variables={"APPSTARTER_TEST_VAR": "from-command"},
    )

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 1)
    assert recorder.lines() == ["from-command"]
    assert "APPSTARTER_TEST_VAR" not in os.environ


def test_working_directory_is_applied(manager, recorder, tmp_path):
    command = python_command("import os; print(os.getcwd())", working_directory=str(tmp_path))

    assert manager.start(command)
    assert wait_for(lambda: len(recorder.exited) == 1)
    assert os.path.realpath(recorder.lines()[0]) == os.path.realpath(str(tmp_path))


def test_shutdown_cancels_pending_restarts_and_is_idempotent(manager, recorder):
    command = python_command("import sys; sys.exit(1)", restart_policy=RestartPolicy.ALWAYS, restart_delay_seconds=30)

    assert manager.start(command)
    assert wait_for(lambda: manager.has_pending_restart(command.id))

    manager.shutdown()
    manager.shutdown()

    assert not manager.has_pending_restart(command.id)
    assert manager.start(command) is False


def test_shutdown_kills_live_processes(manager, recorder):
    command = python_command(SLEEP_FOREVER, restart_policy=RestartPolicy.ALWAYS)
    assert manager.start(command)
    pid = command.process_id

    manager.shutdown()

    assert manager.get_running_count() == 0
    assert wait_for(lambda: len(recorder.exited) == 1)
    assert wait_for(lambda: not psutil.pid_exists(pid) or psutil.Process(pid).status() == psutil.STATUS_ZOMBIE)
    time.sleep(0.3)
    assert len(recorder.started) == 1


def test_listener_errors_do_not_break_start(manager):
    def _broken(command):
        raise RuntimeError("listener failure")

    manager.process_started.subscribe(_broken)
    command = python_command(SLEEP_FOREVER)

    assert manager.start(command) is True
    assert manager.is_running(command.id)
