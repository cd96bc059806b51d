"""
Tick-driven cron scheduler.

Once per wall-clock minute the scheduler evaluates every registered schedule
against the current time and asks the process manager to start each enabled
command that matches. Starts are dispatched on their own threads so a slow
start never delays other schedules or the next tick.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, List, Optional

from appstarter.log.setup import command_logger
from appstarter.models import CommandConfig
from appstarter.scheduler.cron import CronParseError, CronSchedule

if TYPE_CHECKING:
    from appstarter.supervisor import ProcessManager

log = logging.getLogger(__name__)

# Wake slightly after the minute boundary so the clock has rolled over.
TICK_SLACK_SECONDS = 0.05


@dataclass
class ScheduledJob:
    command: CommandConfig
    schedule: CronSchedule


class SchedulerService:
    """
    Registry of (command, cron schedule) pairs plus the minute tick that fires them.
    """

    def __init__(self, process_manager: "ProcessManager") -> None:
        """
        Initialize the scheduler.

        :param process_manager: Anything with a `start(command)` method.
        """
        self.process_manager = process_manager
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._tick_thread: Optional[threading.Thread] = None
        self._last_tick_minute: Optional[datetime] = None
        self._disposed = False

    #* --- Registration ---
    def schedule_command(self, command: CommandConfig) -> bool:
        """
        Registers or re-registers a command's cron schedule.

        A command with an empty expression is ignored. An invalid expression is
        logged and leaves the command unscheduled.

        :return: True if the command is now scheduled.
        """
        if not command.cron_expression or not command.cron_expression.strip():
            return False

        cmd_log = command_logger(log, command)
        with self._lock:
            self._jobs.pop(command.id, None)
            try:
                schedule = CronSchedule.parse(command.cron_expression)
            except CronParseError as e:
                cmd_log.error(f"Invalid cron expression: {e}")
                return False
            self._jobs[command.id] = ScheduledJob(command, schedule)

        cmd_log.info(f"Scheduled with cron: {schedule.expression}")
        return True

    def unschedule_command(self, command_id: str) -> None:
        with self._lock:
            self._jobs.pop(command_id, None)

    def is_scheduled(self, command_id: str) -> bool:
        with self._lock:
            return command_id in self._jobs

    def scheduled_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    #* --- Evaluation ---
    def tick(self, now: Optional[datetime] = None) -> List[CommandConfig]:
        """
        Evaluates all schedules for the minute containing `now`.

        Each minute is evaluated at most once; a repeated call for the same
        minute dispatches nothing.

        :param now: The time to evaluate. Defaults to the local wall clock.
        :return: The commands whose start was dispatched.
        """
        now = now or datetime.now()
        minute = now.replace(second=0, microsecond=0)

        with self._lock:
            if self._last_tick_minute == minute:
                return []
            self._last_tick_minute = minute
            due = [
                job.command for job in self._jobs.values()
                if job.command.enabled and job.schedule.matches(minute)
            ]

        for command in due:
            threading.Thread(
                target=self._run_scheduled,
                args=(command,),
                daemon=True,
                name=f"scheduled-{command.name or command.id}",
            ).start()
        return due

    def _run_scheduled(self, command: CommandConfig) -> None:
        cmd_log = command_logger(log, command)
        try:
            cmd_log.info("Triggered by schedule")
            self.process_manager.start(command)
        except Exception as e:
            cmd_log.error(f"Scheduled execution failed: {e}", exc_info=True)

    def get_next_run_time(self, command: CommandConfig, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Returns when the command will next be triggered.

        :param now: Reference time. Defaults to the local wall clock.
        :return: The next matching minute within a year, or None.
        """
        with self._lock:
            job = self._jobs.get(command.id)
        if job is None:
            return None
        return job.schedule.next_run_after(now or datetime.now())

    #* --- Tick Source ---
    @staticmethod
    def _seconds_until_next_minute(now: datetime) -> float:
        next_minute = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
        return (next_minute - now).total_seconds() + TICK_SLACK_SECONDS

    def _tick_loop(self) -> None:
        log.debug("Scheduler tick thread started.")
        while not self._stop_event.wait(self._seconds_until_next_minute(datetime.now())):
            try:
                self.tick()
            except Exception as e:
                log.error(f"Scheduler tick failed: {e}", exc_info=True)
        log.debug("Scheduler tick thread stopped.")

    def start(self) -> None:
        """Starts firing ticks on every wall-clock minute."""
        if self._disposed:
            log.warning("Scheduler has been disposed and cannot be started.")
            return
        if self._tick_thread and self._tick_thread.is_alive():
            return
        self._stop_event.clear()
        self._tick_thread = threading.Thread(target=self._tick_loop, daemon=True, name="SchedulerTickThread")
        self._tick_thread.start()
        log.info("Scheduler started")

    def stop(self) -> None:
        """Stops the tick. Registered schedules are kept."""
        self._stop_event.set()
        thread, self._tick_thread = self._tick_thread, None
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join()
        if thread:
            log.info("Scheduler stopped")

    @property
    def is_active(self) -> bool:
        return self._tick_thread is not None and self._tick_thread.is_alive()

    def dispose(self) -> None:
        """Stops and releases the tick source. Safe to call more than once."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        self.stop()
