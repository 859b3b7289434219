"""
Wrangler Signals
================
Explicit subscriber lists for model notifications.

Callbacks run synchronously in connection order on the thread that
emitted. A callback exception propagates to the emitter.
"""

import threading
from dataclasses import dataclass
from typing import Any, Callable, List


@dataclass(frozen=True)
class ChangeEvent:
    """Payload of an attribute change notification."""
    key: str
    value: Any


class Signal:
    """
    Usage:
        changed = Signal()
        disconnect = changed.connect(lambda event: print(event.key))
        changed.emit(ChangeEvent("name", "Chas"))
        disconnect()
    """

    __slots__ = ("_callbacks", "_lock")

    def __init__(self):
        self._callbacks: List[Callable[[Any], None]] = []
        self._lock = threading.Lock()

    def connect(self, callback: Callable[[Any], None]) -> Callable[[], bool]:
        """Subscribe. Returns a function that disconnects this callback."""
        if not callable(callback):
            raise TypeError("Signal callbacks must be callable")
        with self._lock:
            self._callbacks.append(callback)
        return lambda: self.disconnect(callback)

    def disconnect(self, callback: Callable[[Any], None]) -> bool:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                return False
            return True

    def emit(self, payload: Any = None) -> int:
        """Call every subscriber. Returns the number called."""
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(payload)
        return len(callbacks)

    def __len__(self) -> int:
        return len(self._callbacks)
