import os
import sys
import signal
import psutil
import logging
import subprocess
from typing import List, Optional, Union

from appstarter.config import effective_settings as config
from appstarter.supervisor.slots import ManagedProcess

CommandLog = Union[logging.Logger, logging.LoggerAdapter]


def collect_process_tree(pid: int) -> List[psutil.Process]:
    """
    Returns the process and all of its descendants, children first.

    :param pid: The root process id.
    :return: An empty list if the root no longer exists.
    """
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    return [*children, parent]


def _terminate_processes(processes: List[psutil.Process], cmd_log: CommandLog) -> None:
    """
    Sends a graceful termination request (SIGTERM) to every process.

    A process that cannot be signalled is logged and skipped; the caller
    escalates to a forceful kill if it is still alive after the timeout.
    """
    for proc in processes:
        try:
            cmd_log.debug(f"Sending SIGTERM to PID {proc.pid}")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as e:
            cmd_log.warning(f"Could not send SIGTERM to PID {proc.pid}: {e}")


def kill_process_tree(managed: ManagedProcess, processes: List[psutil.Process], timeout: Optional[float] = None) -> None:
    """
    Forcefully kills every process and waits for them to disappear.

    The tracked root is awaited through its watcher rather than psutil so the
    watcher stays the only one reaping it and keeps the real exit code.

    :raises psutil.TimeoutExpired: If any process is still alive after `timeout`.
    :raises psutil.Error: If a process cannot be signalled.
    """
    timeout = config.KILL_WAIT_SECONDS if timeout is None else timeout
    for proc in processes:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue

    descendants = [proc for proc in processes if proc.pid != managed.pid]
    _, alive = psutil.wait_procs(descendants, timeout=timeout)
    if not managed.exited.wait(timeout):
        raise psutil.TimeoutExpired(timeout, pid=managed.pid)
    if alive:
        raise psutil.TimeoutExpired(timeout, pid=alive[0].pid)


def fallback_kill(managed: ManagedProcess, cmd_log: CommandLog) -> None:
    """
    Secondary kill path used when the psutil tree kill fails.

    POSIX kills the whole process group (processes are started in their own
    session); Windows asks taskkill to kill the tree. Popen.kill() is the last resort.
    """
    pid = managed.pid
    if pid is None:
        return
    try:
        if sys.platform == "win32":
            subprocess.run(["taskkill", "/F", "/T", "/PID", str(pid)], timeout=config.KILL_WAIT_SECONDS, check=False, capture_output=True)
        else:
            os.killpg(pid, signal.SIGKILL)
    except (OSError, subprocess.SubprocessError) as e:
        cmd_log.debug(f"Platform kill for PID {pid} failed: {e}")

    try:
        if managed.process.poll() is None:
            managed.process.kill()
    except OSError as e:
        cmd_log.error(f"Could not kill PID {pid}: {e}")


def force_kill(managed: ManagedProcess, cmd_log: CommandLog) -> None:
    """Kills the whole tree immediately, falling back to the platform kill on error."""
    if managed.pid is None or managed.exited.is_set():
        return
    try:
        kill_process_tree(managed, collect_process_tree(managed.pid))
    except psutil.Error as e:
        cmd_log.error(f"Tree kill failed ({e}), trying fallback kill...")
        fallback_kill(managed, cmd_log)


def graceful_shutdown_sequence(managed: ManagedProcess, timeout: float, cmd_log: CommandLog) -> bool:
    """
    Asks the process tree to exit, then escalates to a forceful kill.

    :param managed: The tracked process to stop.
    :param timeout: Seconds to wait for a graceful exit.
    :return: True if the process exited gracefully, False if it had to be killed.
    """
    if managed.exited.is_set():
        return True

    try:
        # Snapshot the tree before signalling; children get re-parented once the root exits.
        processes = collect_process_tree(managed.pid)
        if not processes:
            return True
        _terminate_processes(processes, cmd_log)
    except psutil.Error as e:
        cmd_log.warning(f"Graceful termination failed ({e}), killing process tree...")
        force_kill(managed, cmd_log)
        return False

    if managed.exited.wait(timeout):
        # Descendants that ignored SIGTERM would outlive the command.
        try:
            _, alive = psutil.wait_procs(
                [p for p in processes if p.pid != managed.pid], timeout=config.KILL_WAIT_SECONDS
            )
            if alive:
                cmd_log.debug(f"Killing {len(alive)} leftover child process(es).")
                kill_process_tree(managed, alive)
        except psutil.Error as e:
            cmd_log.warning(f"Could not kill leftover child processes: {e}")
        return True

    cmd_log.warning("Process did not exit gracefully, killing process tree...")
    try:
        kill_process_tree(managed, processes)
    except psutil.Error as e:
        cmd_log.error(f"Tree kill failed ({e}), trying fallback kill...")
        fallback_kill(managed, cmd_log)
    return False
