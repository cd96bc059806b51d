import threading
import subprocess
from typing import Dict, List, Optional

from appstarter.models import CommandConfig


class ManagedProcess:
    """
    The supervisor's handle on one command's OS process.

    A slot is reserved with `process` still None; it is attached once the
    spawn succeeds. The supervisor is the only owner of the Popen object.
    """

    def __init__(self, command: CommandConfig) -> None:
        self.command = command
        self.process: Optional[subprocess.Popen] = None
        self.stop_requested = False
        self.exit_code: Optional[int] = None
        # Set by the watcher once the process has terminated.
        self.exited = threading.Event()
        # Set once the exit handler has finished updating state.
        self.exit_handled = threading.Event()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def is_spawned(self) -> bool:
        return self.process is not None

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.command.name!r} pid={self.pid} stop_requested={self.stop_requested}>"


class SlotMap:
    """
    Thread-safe map of command id to its live ManagedProcess.

    Insertion is insert-if-absent and removal is compare-and-remove, both
    under one lock, so two concurrent starts can never both win a slot and a
    late release can never evict a newer lifecycle.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, ManagedProcess] = {}
        self._lock = threading.Lock()

    def reserve(self, command: CommandConfig) -> Optional[ManagedProcess]:
        """Returns a new ManagedProcess holding the slot, or None if it is taken."""
        with self._lock:
            if command.id in self._slots:
                return None
            managed = ManagedProcess(command)
            self._slots[command.id] = managed
            return managed

    def release(self, command_id: str, expected: ManagedProcess) -> bool:
        """Removes the slot only if it still belongs to `expected`."""
        with self._lock:
            if self._slots.get(command_id) is not expected:
                return False
            del self._slots[command_id]
            return True

    def get(self, command_id: str) -> Optional[ManagedProcess]:
        with self._lock:
            return self._slots.get(command_id)

    def values(self) -> List[ManagedProcess]:
        with self._lock:
            return list(self._slots.values())

    def drain(self) -> List[ManagedProcess]:
        """Empties the map and returns what it held."""
        with self._lock:
            drained = list(self._slots.values())
            self._slots.clear()
            return drained

    def __contains__(self, command_id: object) -> bool:
        with self._lock:
            return command_id in self._slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
