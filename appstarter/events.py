import logging
import threading
from typing import Any, Callable, List

log = logging.getLogger(__name__)


class EventHook:
    """
    A minimal publish/subscribe hook.

    Listeners are called synchronously on the publishing thread. A listener
    that raises is logged and skipped so it can never break the publisher.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[..., Any]) -> Callable[..., Any]:
        """Registers a listener. Returns it so the method works as a decorator."""
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Callable[..., Any]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, *args: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                log.error(f"Listener for '{self.name}' raised: {e}", exc_info=True)

    def __len__(self) -> int:
        return len(self._listeners)
