"""Time and identifier sources.

Deadlines (session idle/absolute expiry, transaction leases) are measured
on the monotonic clock so wall-clock adjustments cannot extend or cut
them. Cookie ``issued_at`` uses wall time because it must survive being
read by a different process.
"""

from __future__ import annotations

import secrets
import time

ID_BYTES = 16


def new_id() -> str:
    """Return an unguessable 128-bit identifier as hex."""
    return secrets.token_hex(ID_BYTES)


class Clock:
    """Real clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def wall(self) -> float:
        return time.time()


class ManualClock(Clock):
    """Clock that only moves when told to.

    Used by tests and by anything that needs to replay timeouts
    deterministically.
    """

    def __init__(self, start: float = 1000.0, wall_start: float = 1_700_000_000.0):
        self._now = start
        self._wall_offset = wall_start - start

    def monotonic(self) -> float:
        return self._now

    def wall(self) -> float:
        return self._now + self._wall_offset

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._now += seconds
