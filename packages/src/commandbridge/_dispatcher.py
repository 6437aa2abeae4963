"""The single publish path for commands.

Both the HTTP trigger and the poll reconciler call
:meth:`CommandDispatcher.dispatch`; validation and failure semantics
live here exactly once.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from commandbridge._clock import WallClock, isoformat, utc_now
from commandbridge._errors import TransportUnavailable, ValidationError
from commandbridge._models import DispatchResult
from commandbridge._transport import TransportPort

logger = logging.getLogger(__name__)

_WILDCARDS = frozenset("+#")


def encode_payload(payload: Any) -> str:
    """Serialise a dispatch payload; strings are sent verbatim."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str)


@dataclass
class CommandDispatcher:
    """Validates dispatch requests and publishes them through the transport.

    Args:
        transport: Broker port used for publishing.
        qos: Quality of service for command publishes.
        wall_clock: Source of the timestamp returned to callers.
    """

    transport: TransportPort
    qos: int = 1
    wall_clock: WallClock = field(default=utc_now, repr=False)

    @property
    def available(self) -> bool:
        """Whether a dispatch could currently reach the broker."""
        return self.transport.is_connected

    async def dispatch(self, topic: Any, payload: Any) -> DispatchResult:
        """Publish *payload* to *topic*.

        Raises:
            ValidationError: *topic* or *payload* is missing or empty,
                or *topic* contains a wildcard.
            TransportUnavailable: The broker is disconnected; nothing
                was sent.  Retryable by the caller.
            PublishFailure: The broker rejected the publish.
        """
        self._validate(topic, payload)

        if not self.transport.is_connected:
            msg = "MQTT broker not connected"
            raise TransportUnavailable(msg)

        await self.transport.publish(topic, encode_payload(payload), qos=self.qos)

        command_type = payload.get("type") if isinstance(payload, dict) else None
        logger.info(
            "Published to %s: %s",
            topic,
            command_type or "unknown",
            extra={"topic": topic},
        )
        return DispatchResult(topic=topic, timestamp=isoformat(self.wall_clock()))

    @staticmethod
    def _validate(topic: Any, payload: Any) -> None:
        if not isinstance(topic, str) or not topic.strip():
            msg = "Missing topic"
            raise ValidationError(msg)
        if _WILDCARDS & set(topic):
            msg = f"Topic {topic!r} must not contain wildcards"
            raise ValidationError(msg)
        if payload is None or payload == "" or payload == {} or payload == []:
            msg = "Missing payload"
            raise ValidationError(msg)
