import logging
import threading
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional

from appstarter.config import effective_settings as config
from appstarter.events import EventHook
from appstarter.models import LogEntry, SYSTEM_COMMAND_ID
from appstarter.models.log_entry import SYSTEM_COMMAND_NAME


class CommandLogStore(logging.Handler):
    """
    A logging handler that keeps the most recent log lines of every command
    in memory, grouped by command id.

    Records carry their command through the `command_id` / `command_name`
    attributes set by `command_logger`; anything else is filed under the
    system id.
    """
    def __init__(self, max_entries_per_command: Optional[int] = None):
        """
        Initializes the in-memory log store.

        :param max_entries_per_command: Per-command buffer size. Older lines are dropped first.
        """
        super().__init__()
        self.max_entries = max_entries_per_command or config.MAX_LOG_ENTRIES_PER_COMMAND
        self.buffers: Dict[str, Deque[LogEntry]] = {}
        self.buffer_lock = threading.Lock()
        self.log_added = EventHook("log_added")

    def emit(self, record: logging.LogRecord) -> None:
        """
        Converts a log record into a `LogEntry` and appends it to its command's buffer.

        :param record: The log record to be processed.
        """
        try:
            entry = LogEntry(
                message=record.getMessage(),
                command_id=getattr(record, "command_id", SYSTEM_COMMAND_ID),
                command_name=getattr(record, "command_name", SYSTEM_COMMAND_NAME),
                level=record.levelname,
                timestamp=datetime.fromtimestamp(record.created),
            )
            with self.buffer_lock:
                buffer = self.buffers.get(entry.command_id)
                if buffer is None:
                    buffer = self.buffers[entry.command_id] = deque(maxlen=self.max_entries)
                buffer.append(entry)
        except Exception:
            self.handleError(record)
            return

        self.log_added.emit(entry)

    def get_logs(self, command_id: str, count: int = 100) -> List[LogEntry]:
        """Returns the last `count` entries for one command, oldest first."""
        with self.buffer_lock:
            buffer = self.buffers.get(command_id)
            if not buffer:
                return []
            return list(buffer)[-count:]

    def get_all_logs(self, count: Optional[int] = None) -> List[LogEntry]:
        """Returns the most recent `count` entries across all commands in chronological order."""
        count = count or config.LOG_HISTORY_COUNT
        with self.buffer_lock:
            entries = [entry for buffer in self.buffers.values() for entry in buffer]
        entries.sort(key=lambda e: e.timestamp)
        return entries[-count:]

    def clear_logs(self, command_id: str) -> None:
        with self.buffer_lock:
            buffer = self.buffers.get(command_id)
            if buffer is not None:
                buffer.clear()
