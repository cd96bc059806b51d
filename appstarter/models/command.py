import uuid
from datetime import datetime, timedelta
from enum import Enum, IntFlag
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional


class RestartPolicy(str, Enum):
    """What the supervisor does when a command's process exits on its own."""
    NONE = "None"
    ALWAYS = "Always"
    ON_FAILURE = "OnFailure"
    UNLESS_STOPPED = "UnlessStopped"


class StartTrigger(IntFlag):
    """Conditions that start a command. Several may be combined."""
    NONE = 0
    ON_BOOT = 1
    ON_USER_LOGIN = 2
    MANUAL = 4
    ON_APP_START = 8
    SCHEDULED = 16


class CommandStatus(str, Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    FAILED = "Failed"
    SCHEDULED = "Scheduled"


# Runtime fields are owned by the supervisor and never persisted.
RUNTIME_FIELDS = frozenset({"status", "process_id", "restart_count", "started_at", "last_run_at"})


@dataclass
class CommandConfig:
    """
    A user-defined external program plus its launch and restart configuration.

    The same instance is shared by the host, the supervisor and the scheduler;
    the supervisor updates the runtime fields in place.
    """
    name: str = ""
    command: str = ""
    arguments: str = ""
    working_directory: str = ""
    environment_variables: Dict[str, str] = field(default_factory=dict)
    hide_window: bool = True
    description: str = ""

    restart_policy: RestartPolicy = RestartPolicy.NONE
    restart_delay_seconds: float = 5
    max_restart_attempts: int = 3

    start_trigger: StartTrigger = StartTrigger.MANUAL
    cron_expression: str = ""
    enabled: bool = True
    priority: int = 0

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)

    # Runtime state
    status: CommandStatus = CommandStatus.STOPPED
    process_id: Optional[int] = None
    restart_count: int = 0
    started_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("Command id is immutable once assigned")
        super().__setattr__(name, value)

    def has_trigger(self, trigger: StartTrigger) -> bool:
        return bool(self.start_trigger & trigger)

    @property
    def uptime(self) -> Optional[timedelta]:
        if self.started_at is None:
            return None
        return datetime.now() - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """Returns the persisted fields as JSON-friendly values."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            if f.name in RUNTIME_FIELDS:
                continue
            value = getattr(self, f.name)
            if isinstance(value, RestartPolicy):
                value = value.value
            elif isinstance(value, StartTrigger):
                value = int(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, dict):
                value = dict(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandConfig":
        """
        Builds a command from persisted fields.

        Unknown keys and runtime fields are ignored. The restart policy may be
        given by value ("OnFailure") or by member name ("ON_FAILURE").
        """
        known = {f.name for f in fields(cls)} - RUNTIME_FIELDS
        kwargs = {key: value for key, value in data.items() if key in known}

        policy = kwargs.get("restart_policy")
        if isinstance(policy, str):
            try:
                kwargs["restart_policy"] = RestartPolicy(policy)
            except ValueError:
                kwargs["restart_policy"] = RestartPolicy[policy.upper()]
        if "start_trigger" in kwargs:
            kwargs["start_trigger"] = StartTrigger(int(kwargs["start_trigger"]))
        if isinstance(kwargs.get("created_at"), str):
            kwargs["created_at"] = datetime.fromisoformat(kwargs["created_at"])
        if "environment_variables" in kwargs:
            kwargs["environment_variables"] = {
                str(k): str(v) for k, v in (kwargs["environment_variables"] or {}).items()
            }
        return cls(**kwargs)
