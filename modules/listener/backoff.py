"""
Backoff Policy — Reconnect Delay Schedule

Computes the delay before the next reconnect attempt:

    delay(attempt) = min(base * factor ** attempt, cap)

The attempt counter advances on every scheduled reconnect and resets to
zero the moment a transport opens successfully.
"""

import random


def compute_delay(
    attempt: int,
    base_delay_s: float,
    max_delay_s: float,
    backoff_factor: float = 2.0,
) -> float:
    """Pure delay schedule for a zero-based attempt number."""
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    return min(base_delay_s * (backoff_factor ** attempt), max_delay_s)


class BackoffPolicy:
    """
    Stateful wrapper over compute_delay().

    current_delay always lies within [base_delay_s, max_delay_s], jitter
    included.
    """

    def __init__(
        self,
        base_delay_s: float,
        max_delay_s: float,
        backoff_factor: float = 2.0,
        jitter: bool = False,
    ):
        if base_delay_s <= 0:
            raise ValueError(f"base_delay_s must be > 0, got {base_delay_s}")
        if max_delay_s < base_delay_s:
            raise ValueError(
                f"max_delay_s ({max_delay_s}) must be >= base_delay_s ({base_delay_s})"
            )
        self._base_delay_s = base_delay_s
        self._max_delay_s = max_delay_s
        self._backoff_factor = backoff_factor
        self._jitter = jitter

        self._attempts = 0

    @property
    def attempts(self) -> int:
        """Reconnects scheduled since the last successful open."""
        return self._attempts

    @property
    def base_delay_s(self) -> float:
        return self._base_delay_s

    @property
    def max_delay_s(self) -> float:
        return self._max_delay_s

    @property
    def current_delay(self) -> float:
        """Delay that the next scheduled reconnect will use, without jitter."""
        return compute_delay(
            self._attempts, self._base_delay_s, self._max_delay_s, self._backoff_factor
        )

    def next_delay(self) -> float:
        """Return the delay for this reconnect and advance the schedule."""
        delay = self.current_delay
        if self._jitter:
            delay *= random.uniform(0.75, 1.25)
            delay = max(self._base_delay_s, min(delay, self._max_delay_s))
        self._attempts += 1
        return delay

    def reset(self) -> int:
        """Reset the internal attempt counter after a successful connection.

        Returns the count that was cleared.
        """
        attempts, self._attempts = self._attempts, 0
        return attempts

    def resume(self, attempts: int) -> None:
        """Continue the schedule from an earlier attempt count."""
        if attempts < 0:
            raise ValueError(f"attempts must be >= 0, got {attempts}")
        self._attempts = attempts
