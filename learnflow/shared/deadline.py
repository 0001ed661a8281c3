"""
Query deadlines.

A `Deadline` is created when the router accepts a query and is passed to every
collaborator call made on that query's behalf, so each call only waits for the
budget that is actually left.
"""

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class Deadline:
    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(expires_at=time.monotonic() + max(0.0, float(seconds)))

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def shortened(self, reserve: float) -> "Deadline":
        """Return a deadline `reserve` seconds earlier (never earlier than now)."""
        return Deadline(expires_at=max(time.monotonic(), self.expires_at - reserve))
