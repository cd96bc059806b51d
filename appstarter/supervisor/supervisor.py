import time
import logging
import threading
from datetime import datetime
from multiprocessing.pool import ThreadPool
from typing import Dict, List, Optional

from appstarter.config import effective_settings as config
from appstarter.events import EventHook
from appstarter.log.setup import command_logger
from appstarter.models import CommandConfig, CommandStatus, RestartPolicy
from appstarter.supervisor import process_utils, shutdown
from appstarter.supervisor.slots import ManagedProcess, SlotMap

log = logging.getLogger(__name__)

# Bounded wait for pipe readers to drain after the process exits.
READER_JOIN_TIMEOUT = 1.0


class ProcessManager:
    """
    Supervises the OS processes of user-defined commands.

    At most one live process exists per command id. Exits are observed by a
    watcher thread per process, which updates the command's runtime state,
    publishes `process_exited` and applies the command's restart policy.

    Events:
    - process_started(command)
    - process_stopped(command)
    - process_exited(command, exit_code)
    - output_received(command, line, is_error)
    """

    def __init__(self) -> None:
        """Initializes the ProcessManager state."""
        self._slots = SlotMap()
        self._pending_restarts: Dict[str, threading.Timer] = {}
        self._restart_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._disposed = False

        self.shutdown_signal_received = threading.Event()

        self.process_started = EventHook("process_started")
        self.process_stopped = EventHook("process_stopped")
        self.process_exited = EventHook("process_exited")
        self.output_received = EventHook("output_received")

    #* --- Queries ---
    def is_running(self, command_id: str) -> bool:
        return command_id in self._slots

    def get_status(self, command_id: str) -> CommandStatus:
        managed = self._slots.get(command_id)
        if managed is None:
            return CommandStatus.STOPPED
        return managed.command.status

    def get_running_count(self) -> int:
        return len(self._slots)

    def has_pending_restart(self, command_id: str) -> bool:
        with self._restart_lock:
            return command_id in self._pending_restarts

    #* --- Start ---
    def start(self, command: CommandConfig) -> bool:
        """
        Starts a command's process.

        The slot is reserved before spawning, so concurrent calls for the same
        command cannot both proceed. Counts as an explicit start: the restart
        counter is reset and any pending automatic restart is cancelled.

        :param command: The command to start.
        :return: True if a new process was spawned, False otherwise.
        """
        self._cancel_pending_restart(command.id)
        return self._launch(command, explicit=True)

    def _launch(self, command: CommandConfig, explicit: bool) -> bool:
        cmd_log = command_logger(log, command)
        if self.shutdown_signal_received.is_set():
            cmd_log.info("Supervisor is shutting down - not starting process")
            return False

        managed = self._slots.reserve(command)
        if managed is None:
            cmd_log.info("Process is already running or a start is in progress - skipping duplicate start")
            return False

        try:
            command.status = CommandStatus.STARTING
            cmd_log.info(f"Starting process: {command.command} {command.arguments}".rstrip())
            managed.process = process_utils.spawn_process(command)
        except Exception as e:
            cmd_log.error(f"Error starting process: {e}")
            command.status = CommandStatus.FAILED
            self._slots.release(command.id, managed)
            return False

        now = datetime.now()
        command.status = CommandStatus.RUNNING
        command.process_id = managed.pid
        command.started_at = now
        command.last_run_at = now
        if explicit:
            command.restart_count = 0

        cmd_log.info(f"Process started with PID: {managed.pid}")
        # Published before the readers and watcher run, so no output or exit
        # event for this lifecycle can precede it. Unread output waits in the pipes.
        self.process_started.emit(command)

        readers = process_utils.log_process_output(
            managed.process, command,
            line_handler=lambda line, is_error: self.output_received.emit(command, line, is_error),
        )
        threading.Thread(
            target=self._watch_process,
            args=(managed, readers),
            daemon=True,
            name=f"watch-{command.name or command.id}",
        ).start()
        return True

    #* --- Exit Handling ---
    def _watch_process(self, managed: ManagedProcess, readers: List[threading.Thread]) -> None:
        """Waits for the process to terminate, then runs the exit handler."""
        exit_code = managed.process.wait()
        managed.exit_code = exit_code
        managed.exited.set()
        for reader in readers:
            reader.join(READER_JOIN_TIMEOUT)

        command = managed.command
        try:
            self._handle_exit(managed, exit_code)
        finally:
            managed.exit_handled.set()
        self._evaluate_restart_policy(command, exit_code, managed)

    def _handle_exit(self, managed: ManagedProcess, exit_code: int) -> None:
        command = managed.command
        cmd_log = command_logger(log, command)
        cmd_log.info(f"Process exited with code: {exit_code}")

        owner = self._slots.get(command.id)
        if owner is not None and owner is not managed:
            # stop() already released this lifecycle and a newer one owns the command.
            self.process_exited.emit(command, exit_code)
            return

        command.status = CommandStatus.STOPPED if exit_code == 0 else CommandStatus.FAILED
        command.process_id = None
        command.started_at = None
        # Release only after state is updated so a new start sees a finished lifecycle.
        self._slots.release(command.id, managed)
        self.process_exited.emit(command, exit_code)

    def should_restart(self, command: CommandConfig, exit_code: int) -> bool:
        """Applies the restart policy to an exit that was not requested by stop()."""
        policy = command.restart_policy
        if policy is RestartPolicy.ALWAYS:
            return True
        if policy is RestartPolicy.ON_FAILURE:
            return exit_code != 0
        if policy is RestartPolicy.UNLESS_STOPPED:
            # Requested stops never reach here, so this only differs from ALWAYS in intent.
            return True
        return False

    def _evaluate_restart_policy(self, command: CommandConfig, exit_code: int, managed: ManagedProcess) -> None:
        if managed.stop_requested or self.shutdown_signal_received.is_set():
            return
        if self._slots.get(command.id) is not None:
            # An explicit start already began a new lifecycle.
            return
        if not self.should_restart(command, exit_code):
            return

        cmd_log = command_logger(log, command)
        if command.restart_count >= command.max_restart_attempts:
            cmd_log.error(
                f"Max restart attempts ({command.max_restart_attempts}) reached. Process will not be restarted."
            )
            command.status = CommandStatus.FAILED
            return

        command.restart_count += 1
        cmd_log.info(
            f"Restarting in {command.restart_delay_seconds} seconds "
            f"(attempt {command.restart_count}/{command.max_restart_attempts})..."
        )
        self._schedule_restart(command)

    def _schedule_restart(self, command: CommandConfig) -> None:
        timer = threading.Timer(command.restart_delay_seconds, self._run_pending_restart, args=(command,))
        timer.daemon = True
        timer.name = f"restart-{command.name or command.id}"
        with self._restart_lock:
            if self.shutdown_signal_received.is_set():
                return
            previous = self._pending_restarts.pop(command.id, None)
            if previous is not None:
                previous.cancel()
            self._pending_restarts[command.id] = timer
        timer.start()

    def _run_pending_restart(self, command: CommandConfig) -> None:
        with self._restart_lock:
            timer = self._pending_restarts.get(command.id)
            if timer is not threading.current_thread():
                # Cancelled or superseded.
                return
            del self._pending_restarts[command.id]
        if self.shutdown_signal_received.is_set():
            return
        self._launch(command, explicit=False)

    def cancel_pending_restart(self, command_id: str) -> bool:
        """
        Cancels a scheduled automatic restart without touching any process.

        :return: True if a pending restart was cancelled.
        """
        if self._cancel_pending_restart(command_id):
            log.info(f"Cancelled pending automatic restart of {command_id}")
            return True
        return False

    def _cancel_pending_restart(self, command_id: str) -> bool:
        with self._restart_lock:
            timer = self._pending_restarts.pop(command_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    #* --- Stop ---
    def stop(self, command: CommandConfig, timeout_ms: Optional[int] = None) -> bool:
        """
        Stops a command's process, gracefully first and forcefully after `timeout_ms`.

        The stop flag suppresses the restart policy for this exit. The slot is
        always released and the status set to STOPPED before returning. An
        untracked command is left alone, including any pending automatic restart.

        :param command: The command to stop.
        :param timeout_ms: Graceful shutdown window. Defaults to STOP_TIMEOUT_MS.
        :return: True if a tracked process was stopped without errors.
        """
        timeout_ms = config.STOP_TIMEOUT_MS if timeout_ms is None else timeout_ms
        cmd_log = command_logger(log, command)

        managed = self._slots.get(command.id)
        if managed is None:
            cmd_log.info("Process is not running")
            return False
        if not managed.is_spawned:
            cmd_log.info("Process start is still in progress - cannot stop yet")
            return False

        succeeded = True
        try:
            command.status = CommandStatus.STOPPING
            managed.stop_requested = True
            cmd_log.info("Stopping process...")
            shutdown.graceful_shutdown_sequence(managed, timeout_ms / 1000, cmd_log)
            # Let the exit handler finish so it cannot overwrite the final status.
            managed.exit_handled.wait(config.KILL_WAIT_SECONDS)
        except Exception as e:
            cmd_log.error(f"Error stopping process: {e}")
            succeeded = False
            # The slot must not be released over a live process.
            try:
                shutdown.force_kill(managed, cmd_log)
                managed.exit_handled.wait(config.KILL_WAIT_SECONDS)
            except Exception as kill_error:
                cmd_log.error(f"Forced kill after stop error failed: {kill_error}")
        finally:
            self._slots.release(command.id, managed)
            # A new lifecycle may already own the command if a start raced in after the exit.
            if self._slots.get(command.id) is None:
                command.status = CommandStatus.STOPPED
                command.process_id = None
                command.started_at = None

        cmd_log.info("Process stopped")
        self.process_stopped.emit(command)
        return succeeded

    def restart(self, command: CommandConfig) -> bool:
        """Stops the command, pauses briefly, then starts it again."""
        self.stop(command)
        time.sleep(config.RESTART_PAUSE_SECONDS)
        return self.start(command)

    def stop_all(self) -> None:
        """
        Stops every tracked process concurrently and waits for all of them.

        One worker per process, so the total time is bounded by the slowest
        single stop rather than growing with the number of processes.
        """
        targets = [managed.command for managed in self._slots.values() if managed.is_spawned]
        if not targets:
            log.info("No running processes found to stop.")
            return

        log.info(f"Stopping {len(targets)} processes...")
        with ThreadPool(processes=len(targets)) as pool:
            pool.map(self.stop, targets)

    #* --- Disposal ---
    def shutdown(self) -> None:
        """
        Cancels pending restarts and force-kills every tracked process tree.
        Safe to call more than once.
        """
        with self._lifecycle_lock:
            if self._disposed:
                return
            self._disposed = True

        self.shutdown_signal_received.set()
        with self._restart_lock:
            timers = list(self._pending_restarts.values())
            self._pending_restarts.clear()
        for timer in timers:
            timer.cancel()

        remaining = self._slots.drain()
        if remaining:
            log.warning(f"Force-killing {len(remaining)} remaining processes...")
        for managed in remaining:
            managed.stop_requested = True
            cmd_log = command_logger(log, managed.command)
            try:
                shutdown.force_kill(managed, cmd_log)
            except Exception as e:
                cmd_log.error(f"Failed to kill process during shutdown: {e}")
        log.info("Process manager shut down.")
