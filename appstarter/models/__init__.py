"""
Data models shared by the supervisor, the scheduler and the host.
"""

from .command import CommandConfig, CommandStatus, RestartPolicy, StartTrigger
from .log_entry import LogEntry, SYSTEM_COMMAND_ID

__all__ = [
    "CommandConfig",
    "CommandStatus",
    "RestartPolicy",
    "StartTrigger",
    "LogEntry",
    "SYSTEM_COMMAND_ID",
]
