"""Clock ports and system adapters.

Two notions of time are used throughout the bridge:

- **Monotonic** time (:class:`ClockPort`) measures elapsed durations:
  dedup cooldowns, uptime.  ``time.monotonic()`` is immune to NTP
  adjustments, so a wall-clock jump can never shorten or extend a
  cooldown window.
- **Wall** time (:data:`WallClock`) stamps records and responses that
  leave the process: dispatch timestamps, ``executed_at`` values.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

WallClock = Callable[[], datetime]
"""Callable returning the current timezone-aware wall-clock time."""


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock for timing measurements.

    The default implementation wraps ``time.monotonic()``. Tests
    inject a deterministic fake clock for reproducible timing.
    """

    def now(self) -> float:
        """Return monotonic time in seconds.

        Returns:
            A float representing seconds from an arbitrary epoch.
            Only the *difference* between two calls is meaningful.
        """
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``.

    Satisfies :class:`ClockPort` via structural subtyping.
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()


def utc_now() -> datetime:
    """Default :data:`WallClock`: the current time in UTC."""
    return datetime.now(UTC)


def isoformat(moment: datetime) -> str:
    """Render *moment* as ISO 8601 with millisecond precision and a ``Z`` suffix.

    Matches the timestamp shape the item store and device firmware
    already exchange (``2026-02-14T12:34:56.789Z``).
    """
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace(
        "+00:00",
        "Z",
    )
