import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from appstarter.log import CommandLogStore
from appstarter.models import CommandConfig, CommandStatus, StartTrigger
from appstarter.scheduler import SchedulerService
from appstarter.supervisor import ProcessManager

log = logging.getLogger(__name__)


class CommandHost:
    """
    Owns the command set and wires the process manager to the scheduler.

    The host decides which commands get registered where: enabled commands
    with a Scheduled trigger go to the scheduler, and start triggers
    (app start, boot, login) are resolved here.
    """

    def __init__(
        self,
        process_manager: Optional[ProcessManager] = None,
        scheduler: Optional[SchedulerService] = None,
        log_store: Optional[CommandLogStore] = None,
    ) -> None:
        self.process_manager = process_manager or ProcessManager()
        self.scheduler = scheduler or SchedulerService(self.process_manager)
        self.log_store = log_store
        self.commands: Dict[str, CommandConfig] = {}
        self._lock = threading.Lock()
        self._shut_down = False

        self.process_manager.process_started.subscribe(self._on_process_started)
        self.process_manager.process_stopped.subscribe(self._on_process_idle)
        self.process_manager.process_exited.subscribe(self._on_process_exited)

    #* --- Event wiring ---
    def _on_process_started(self, command: CommandConfig) -> None:
        log.debug(f"'{command.name}' is running with PID {command.process_id}.")

    def _on_process_exited(self, command: CommandConfig, exit_code: int) -> None:
        if exit_code != 0:
            log.warning(f"'{command.name}' exited with code {exit_code}.")
        self._on_process_idle(command)

    def _on_process_idle(self, command: CommandConfig) -> None:
        # Scheduled commands show as waiting for their next trigger.
        if command.status is CommandStatus.STOPPED and self.scheduler.is_scheduled(command.id):
            command.status = CommandStatus.SCHEDULED

    #* --- Command set ---
    def add_command(self, command: CommandConfig) -> None:
        with self._lock:
            if command.id in self.commands:
                raise ValueError(f"A command with id '{command.id}' is already registered")
            self.commands[command.id] = command
        self._sync_schedule(command)

    def add_commands(self, commands: Iterable[CommandConfig]) -> None:
        for command in commands:
            self.add_command(command)

    def update_command(self, command: CommandConfig) -> None:
        """Re-applies scheduling after a command's configuration changed."""
        with self._lock:
            self.commands[command.id] = command
        self._sync_schedule(command)

    def remove_command(self, command_id: str) -> Optional[CommandConfig]:
        """Stops and forgets a command."""
        with self._lock:
            command = self.commands.pop(command_id, None)
        if command is None:
            return None
        self.scheduler.unschedule_command(command_id)
        self.process_manager.cancel_pending_restart(command_id)
        if self.process_manager.is_running(command_id):
            self.process_manager.stop(command)
        if self.log_store is not None:
            self.log_store.clear_logs(command_id)
        return command

    def get_command(self, command_id: str) -> Optional[CommandConfig]:
        with self._lock:
            return self.commands.get(command_id)

    def _sorted_commands(self) -> List[CommandConfig]:
        with self._lock:
            return sorted(self.commands.values(), key=lambda c: (c.priority, c.name))

    def _sync_schedule(self, command: CommandConfig) -> None:
        if command.enabled and command.has_trigger(StartTrigger.SCHEDULED):
            if self.scheduler.schedule_command(command) and not self.process_manager.is_running(command.id):
                if command.status is CommandStatus.STOPPED:
                    command.status = CommandStatus.SCHEDULED
            return

        self.scheduler.unschedule_command(command.id)
        if command.status is CommandStatus.SCHEDULED:
            command.status = CommandStatus.STOPPED

    #* --- Bulk operations ---
    def start_triggered(self, trigger: StartTrigger) -> List[CommandConfig]:
        """
        Starts every enabled command carrying `trigger`, in priority order.

        :return: The commands that were started.
        """
        started = []
        for command in self._sorted_commands():
            if command.enabled and command.has_trigger(trigger):
                if self.process_manager.start(command):
                    started.append(command)
        return started

    def start_app(self) -> None:
        """Starts the scheduler and every enabled command with the OnAppStart trigger."""
        self.scheduler.start()
        started = self.start_triggered(StartTrigger.ON_APP_START)
        log.info(f"Host started: {len(self.commands)} commands, {len(started)} started on app start.")

    def start_all(self) -> int:
        """Starts every enabled command. Returns how many were started."""
        return sum(
            1 for command in self._sorted_commands()
            if command.enabled and self.process_manager.start(command)
        )

    def stop_all(self) -> None:
        self.process_manager.stop_all()

    def next_run_times(self, now: Optional[datetime] = None) -> Dict[str, Optional[datetime]]:
        """Next trigger time for each scheduled command, keyed by command id."""
        return {
            command.id: self.scheduler.get_next_run_time(command, now)
            for command in self._sorted_commands()
            if self.scheduler.is_scheduled(command.id)
        }

    def shutdown(self) -> None:
        """Stops scheduling, stops all processes and disposes the process manager."""
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
        self.scheduler.dispose()
        self.process_manager.stop_all()
        self.process_manager.shutdown()
        log.info("Host shut down.")
