"""Liveness reporting for the bridge process.

Served by ``GET /health``::

    {
        "status": "ok",               # "degraded" while the broker is down
        "mqtt": "connected",          # connection state machine value
        "polling": "active",          # "disabled" without a store token
        "timestamp": "2026-02-14T12:34:56.789Z",
        "uptime_s": 3600.0,
        "version": "0.1.0"
    }
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from commandbridge._clock import ClockPort, WallClock, isoformat, utc_now
from commandbridge._transport import TransportPort


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    """Immutable point-in-time health report."""

    status: str
    mqtt: str
    polling: str
    timestamp: str
    uptime_s: float
    version: str

    def to_dict(self) -> dict[str, object]:
        """Serialise to a plain dictionary."""
        return asdict(self)


@dataclass
class HealthReporter:
    """Builds :class:`HealthSnapshot` values from live component state.

    Parameters
    ----------
    transport:
        Broker port whose connection state is reported.
    polling_enabled:
        Whether the poll reconciler runs in this process.
    version:
        Application version string.
    clock:
        Monotonic clock for uptime measurement.
    wall_clock:
        Source of the snapshot timestamp.
    """

    transport: TransportPort
    polling_enabled: bool
    version: str
    clock: ClockPort
    wall_clock: WallClock = field(default=utc_now, repr=False)
    _start_time: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Capture the start time for uptime calculation."""
        self._start_time = self.clock.now()

    def snapshot(self) -> HealthSnapshot:
        """Report the current liveness."""
        return HealthSnapshot(
            status="ok" if self.transport.is_connected else "degraded",
            mqtt=str(self.transport.state),
            polling="active" if self.polling_enabled else "disabled",
            timestamp=isoformat(self.wall_clock()),
            uptime_s=round(self.clock.now() - self._start_time, 3),
            version=self.version,
        )
