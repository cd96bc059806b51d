from datetime import datetime
from dataclasses import dataclass, field

SYSTEM_COMMAND_ID = "system"
SYSTEM_COMMAND_NAME = "System"


@dataclass
class LogEntry:
    """A single line of command output or supervisor activity."""
    message: str
    command_id: str = SYSTEM_COMMAND_ID
    command_name: str = SYSTEM_COMMAND_NAME
    level: str = "INFO"
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_error(self) -> bool:
        return self.level in ("ERROR", "CRITICAL")
