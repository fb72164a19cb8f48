"""Restart backoff: 1, 2, 4, 8, 16, 30, 30, ... seconds."""

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Doubling delay with a ceiling.

    The run loop feeds the last delay back in and never resets it, so a child
    that dies after hours of uptime still restarts with the saturated delay.
    """

    initial: float = 1.0
    ceiling: float = 30.0

    def next_delay(self, previous: float) -> float:
        if previous <= 0:
            return min(self.initial, self.ceiling)
        return min(previous * 2, self.ceiling)
