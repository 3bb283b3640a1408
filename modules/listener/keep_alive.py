"""
Keep-Alive Monitor — Periodic Health Check with Pong Deadline

Every interval: if the transport is open and no ping is outstanding, send a
ping and arm a pong deadline. A matching confirmation clears the deadline;
an expired deadline terminates the transport exactly once.

Both timers live in the listener's TimerSet, so close and stop cancel them
together with everything else. Callbacks run under the listener's lock and
carry the generation they were armed in; a callback from an earlier
generation is dropped.
"""

import contextlib
from typing import Callable, Optional

from modules.listener import timers
from modules.listener.timers import TimerSet
from utils.logger import get_logger

logger = get_logger("listener.keep_alive")


class KeepAliveMonitor:
    """Drives the ping/pong cycle for one listener."""

    def __init__(
        self,
        timer_set: TimerSet,
        interval_s: float,
        pong_timeout_s: float,
        send_ping: Callable[[], bool],
        on_timeout: Callable[[], None],
        lock: Optional[contextlib.AbstractContextManager] = None,
    ):
        """
        Args:
            timer_set: The listener's owned timer registry.
            interval_s: Seconds between health checks. 0 disables the monitor.
            pong_timeout_s: Seconds to wait for the confirmation.
            send_ping: Sends a ping; returns False when the transport is not open.
            on_timeout: Force-terminates the stalled transport.
            lock: Serialises timer callbacks with the listener's handlers.
        """
        self._timers = timer_set
        self._interval_s = interval_s
        self._pong_timeout_s = pong_timeout_s
        self._send_ping = send_ping
        self._on_timeout = on_timeout
        self._lock = lock if lock is not None else contextlib.nullcontext()

        self._generation = 0
        self._armed = False
        self._pending = False

    @property
    def enabled(self) -> bool:
        return self._interval_s > 0

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def pending(self) -> bool:
        """True while a ping awaits its confirmation."""
        return self._pending

    def arm(self) -> None:
        """Start a new health-check cycle. No-op when disabled."""
        if not self.enabled:
            logger.debug("KEEP_ALIVE_DISABLED")
            return
        self._generation += 1
        self._armed = True
        self._pending = False
        self._schedule_tick(self._generation)

    def disarm(self) -> None:
        self._generation += 1
        self._armed = False
        self._pending = False
        self._timers.cancel(timers.KEEP_ALIVE)
        self._timers.cancel(timers.PONG_DEADLINE)

    def pong_received(self) -> None:
        """Clear the outstanding health check."""
        self._pending = False
        if self._timers.cancel(timers.PONG_DEADLINE):
            logger.debug("HEALTH_CHECK_OK")

    def _schedule_tick(self, generation: int) -> None:
        self._timers.arm(
            timers.KEEP_ALIVE, self._interval_s, lambda: self._tick(generation)
        )

    def _tick(self, generation: int) -> None:
        with self._lock:
            if not self._armed or generation != self._generation:
                return

            self._schedule_tick(generation)

            if self._pending:
                logger.debug("HEALTH_CHECK_SKIPPED | reason=ping_outstanding")
                return

            if not self._send_ping():
                return

            logger.debug(f"HEALTH_CHECK_SENT | pong_timeout_s={self._pong_timeout_s}")
            self._pending = True
            self._timers.arm(
                timers.PONG_DEADLINE, self._pong_timeout_s, lambda: self._expire(generation)
            )

    def _expire(self, generation: int) -> None:
        with self._lock:
            if not self._pending or generation != self._generation:
                return
            logger.warning(
                f"PING_TIMEOUT | pong_timeout_s={self._pong_timeout_s} | "
                "terminating transport"
            )
            self.disarm()
            self._on_timeout()
