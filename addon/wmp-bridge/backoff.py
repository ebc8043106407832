"""Backoff helpers for receive polling and reconnect spacing."""

from config import (
    RECONNECT_MAX_DELAY,
    RECONNECT_MIN_DELAY,
    RECV_BACKOFF_FACTOR,
    RECV_MAX_DELAY,
    RECV_MIN_DELAY,
)


class PollBackoff:
    """Delay between receive polls.

    Any received byte snaps the delay back to the minimum; every empty poll
    multiplies it by ``backoff_multiplier`` up to ``max_delay_s``.
    """

    def __init__(
        self,
        min_delay_s: float = RECV_MIN_DELAY,
        max_delay_s: float = RECV_MAX_DELAY,
        backoff_multiplier: float = RECV_BACKOFF_FACTOR,
    ):
        self.min_delay_s = min_delay_s
        self.max_delay_s = max_delay_s
        self.backoff_multiplier = backoff_multiplier
        self._delay = min_delay_s

    @property
    def delay(self) -> float:
        return self._delay

    def on_data(self) -> float:
        self._delay = self.min_delay_s
        return self._delay

    def on_idle(self) -> float:
        self._delay = min(self._delay * self.backoff_multiplier, self.max_delay_s)
        return self._delay

    def reset(self) -> None:
        self._delay = self.min_delay_s


class ReconnectBackoff:
    """Spacing of reconnect attempts made from the master tick."""

    def __init__(
        self,
        initial_backoff_s: float = RECONNECT_MIN_DELAY,
        max_backoff_s: float = RECONNECT_MAX_DELAY,
        backoff_multiplier: float = 2.0,
    ):
        self.initial_backoff_s = initial_backoff_s
        self.max_backoff_s = max_backoff_s
        self.backoff_multiplier = backoff_multiplier
        self._attempt = 0
        self._next_allowed = 0.0

    def get_backoff_delay(self) -> float:
        """Get delay before next attempt."""
        delay = self.initial_backoff_s * (
            self.backoff_multiplier ** self._attempt
        )
        return min(delay, self.max_backoff_s)

    def record_failure(self, now: float) -> float:
        delay = self.get_backoff_delay()
        self._attempt += 1
        self._next_allowed = now + delay
        return delay

    def reset(self) -> None:
        self._attempt = 0
        self._next_allowed = 0.0

    def ready(self, now: float) -> bool:
        return now >= self._next_allowed

    @property
    def next_allowed(self) -> float:
        return self._next_allowed
