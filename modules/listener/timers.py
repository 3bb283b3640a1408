"""
Timer Set — Named One-Shot Timers Owned by a Single Listener

Every timer the listener arms goes through here. Arming a name cancels the
timer previously registered under it, and cancel_all() clears the whole set
in one step on close and on stop.

A timer that fires after it was cancelled or superseded does nothing: the
callback only runs while its handle is still the one registered.
"""

import threading
from typing import Callable, Dict, Optional

# Timer names and the events that cancel them
RECONNECT = "reconnect"          # cancelled by: stop
KEEP_ALIVE = "keep_alive"        # cancelled by: close, stop
PONG_DEADLINE = "pong_deadline"  # cancelled by: pong received, close, stop

TimerFactory = Callable[[float, Callable[[], None]], object]


def _thread_timer(delay_s: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay_s, fn)
    timer.daemon = True
    return timer


class TimerSet:
    """
    Registry of named one-shot timers.

    timer_factory(delay_s, fn) must return an object with start() and
    cancel(); threading.Timer is used by default.
    """

    def __init__(self, timer_factory: Optional[TimerFactory] = None):
        self._timer_factory = timer_factory or _thread_timer
        self._timers: Dict[str, object] = {}
        self._lock = threading.Lock()

    def arm(self, name: str, delay_s: float, fn: Callable[[], None]) -> None:
        """Start a timer under `name`, replacing any timer already there."""
        handle = None

        def fire():
            with self._lock:
                if self._timers.get(name) is not handle:
                    return
                del self._timers[name]
            fn()

        handle = self._timer_factory(delay_s, fire)
        with self._lock:
            previous = self._timers.get(name)
            self._timers[name] = handle
        if previous is not None:
            previous.cancel()
        handle.start()

    def cancel(self, name: str) -> bool:
        """Cancel the timer under `name`. Returns True if one was armed."""
        with self._lock:
            handle = self._timers.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._timers.values())
            self._timers.clear()
        for handle in handles:
            handle.cancel()

    def is_armed(self, name: str) -> bool:
        with self._lock:
            return name in self._timers

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)
