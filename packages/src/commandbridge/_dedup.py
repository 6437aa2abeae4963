"""Time-windowed record of recently dispatched commands.

The poll reconciler and the direct HTTP trigger are two independent
producers feeding the same dispatch path.  This cache is the only
coordination point between them: once a command has been dispatched,
the reconciler leaves it alone for ``cooldown`` seconds, giving the
device time to report back and the store time to converge.

After the cooldown the command is eligible again regardless of its
status.  If the store still says ``pending`` by then, a redundant
dispatch is an accepted cost, not a bug.

Expiry is evaluated on every read, so eligibility never depends on the
cleanup task having run; :meth:`DedupCache.purge` only bounds memory.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from commandbridge._clock import ClockPort, SystemClock
from commandbridge._models import CommandId

logger = logging.getLogger(__name__)


@dataclass
class DedupCache:
    """Command id → monotonic time of its last dispatch."""

    cooldown: float = 30.0
    clock: ClockPort = field(default_factory=SystemClock)
    _entries: dict[CommandId, float] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.cooldown <= 0:
            msg = f"cooldown must be positive, got {self.cooldown}"
            raise ValueError(msg)

    def should_dispatch(self, command_id: CommandId) -> bool:
        """True unless *command_id* was dispatched less than ``cooldown`` ago."""
        dispatched_at = self._entries.get(command_id)
        if dispatched_at is None:
            return True
        return self.clock.now() - dispatched_at >= self.cooldown

    def record_dispatch(self, command_id: CommandId, now: float | None = None) -> None:
        """Insert or overwrite the entry for *command_id*."""
        self._entries[command_id] = self.clock.now() if now is None else now

    def purge(self, now: float | None = None) -> int:
        """Drop entries older than the cooldown; returns how many were removed."""
        current = self.clock.now() if now is None else now
        expired = [
            command_id
            for command_id, dispatched_at in self._entries.items()
            if current - dispatched_at >= self.cooldown
        ]
        for command_id in expired:
            del self._entries[command_id]
        if expired:
            logger.debug("Purged %d expired dedup entries", len(expired))
        return len(expired)

    async def run_cleanup(self, interval: float) -> None:
        """Purge expired entries every *interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.purge()

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
