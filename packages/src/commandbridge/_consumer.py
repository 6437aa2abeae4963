"""Device status reports → command record updates.

Subscribes to ``device/+/status`` and, for each message:

1. extracts the device address from the topic (logging only),
2. parses the JSON payload,
3. ignores non-command traffic (no ``command_id``),
4. drops reports whose status is not ``processing`` / ``completed`` /
   ``failed``,
5. overwrites ``status`` / ``result`` / ``error_message`` /
   ``executed_at`` on the command record.

Every failure after receipt is terminal for that message: it is logged
and never retried, dead-lettered, or surfaced to the broker.  At QoS 1
a dropped update is an accepted data-loss risk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum

from commandbridge._clock import WallClock, isoformat, utc_now
from commandbridge._errors import MalformedPayload, StoreError, UnknownStatus
from commandbridge._models import StatusUpdate, parse_status_report
from commandbridge._store import StatusWriter
from commandbridge._topics import STATUS_TOPIC_PATTERN, device_from_status_topic
from commandbridge._transport import TransportPort

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 100


class StatusOutcome(StrEnum):
    """What happened to one inbound status message."""

    APPLIED = "applied"
    IGNORED = "ignored"
    DROPPED = "dropped"
    STORE_FAILED = "store_failed"


@dataclass
class StatusConsumer:
    """Applies device status reports to the item store.

    Args:
        writer: Consumer-facing store port.
        wall_clock: Source of ``executed_at`` timestamps.
        pattern: Subscription pattern for status topics.
    """

    writer: StatusWriter
    wall_clock: WallClock = field(default=utc_now, repr=False)
    pattern: str = STATUS_TOPIC_PATTERN
    outcomes: dict[StatusOutcome, int] = field(
        default_factory=lambda: dict.fromkeys(StatusOutcome, 0),
        init=False,
    )

    async def attach(self, transport: TransportPort) -> None:
        """Subscribe :meth:`handle` to the status topic pattern."""
        await transport.subscribe(self.pattern, self.handle)
        logger.info("Listening for status reports on %s", self.pattern)

    async def handle(self, topic: str, payload: str) -> StatusOutcome:
        """Process one status message.  Never raises."""
        outcome = await self._handle(topic, payload)
        self.outcomes[outcome] += 1
        return outcome

    async def _handle(self, topic: str, payload: str) -> StatusOutcome:
        device = device_from_status_topic(topic)

        try:
            report = parse_status_report(payload)
        except MalformedPayload as exc:
            logger.error(
                "Invalid JSON payload from %s: %s (%s)",
                device or topic,
                payload[:_PREVIEW_CHARS],
                exc,
                extra={"topic": topic, "device": device},
            )
            return StatusOutcome.DROPPED
        except UnknownStatus as exc:
            logger.warning(
                "Invalid status %r for command %s",
                exc.status,
                exc.command_id,
                extra={"command_id": exc.command_id, "device": device},
            )
            return StatusOutcome.DROPPED

        if report is None:
            logger.debug(
                "Skipping message without command_id from %s",
                device or topic,
                extra={"device": device},
            )
            return StatusOutcome.IGNORED

        extra = {"command_id": report.command_id, "device": device}
        logger.info("Status update: %s -> %s", report.command_id, report.status, extra=extra)

        update = StatusUpdate.from_report(report, executed_at=isoformat(self.wall_clock()))
        try:
            await self.writer.apply_status(report.command_id, update)
        except StoreError as exc:
            logger.error("Store API error: %s", exc, extra=extra)
            return StatusOutcome.STORE_FAILED
        except Exception:
            logger.exception("Error processing message", extra=extra)
            return StatusOutcome.STORE_FAILED

        logger.info("Updated command %s: %s", report.command_id, report.status, extra=extra)
        return StatusOutcome.APPLIED
