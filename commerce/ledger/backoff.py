# ============================================================================
# Agent Commerce Escrow v1.0.0
# Exponential Backoff - Confirmation Polling
# ============================================================================
#
# Reliability Level: L6 Critical
# Purpose: Spacing of receipt polls while a transaction awaits confirmation,
#          widening after transient node errors and always capped by the
#          caller's confirmation deadline
#
# ============================================================================

import random
import time
from typing import Callable, Optional


class ExponentialBackoff:
    """
    Exponential backoff calculator.

    Formula: min(base * (multiplier ^ attempt), max_delay) + jitter

    Reliability Level: L6 Critical
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: float = 0.25
    ):
        """
        Initialize backoff calculator.

        Args:
            base_delay: Initial delay in seconds
            multiplier: Delay multiplier per attempt
            max_delay: Maximum delay cap in seconds
            jitter: Random jitter factor (0-1)
        """
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def get_delay(self) -> float:
        """
        Get next backoff delay and increment attempt counter.

        Returns:
            Delay in seconds with optional jitter
        """
        delay = self.base_delay * (self.multiplier ** self._attempt)
        delay = min(delay, self.max_delay)

        # Jitter spreads out pollers that failed together
        if self.jitter > 0:
            delay += delay * self.jitter * random.random()

        self._attempt += 1
        return delay

    def reset(self) -> None:
        """Reset attempt counter after a successful poll."""
        self._attempt = 0


class Deadline:
    """Monotonic deadline for a bounded confirmation wait."""

    def __init__(
        self,
        seconds: float,
        clock: Callable[[], float] = time.monotonic
    ):
        self.seconds = seconds
        self._clock = clock
        self._expires = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def clamp(self, delay: float) -> float:
        """Never sleep past the deadline."""
        return min(delay, self.remaining())


def sleep_until_next_poll(
    deadline: Deadline,
    delay: float,
    sleep: Optional[Callable[[float], None]] = None
) -> None:
    (sleep or time.sleep)(deadline.clamp(delay))
