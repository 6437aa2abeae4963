"""Domain value objects: commands, devices, status reports.

The item store owns the authoritative command record; these types are
read-side snapshots (:class:`Command`, :class:`Device`) and the two
messages the engine produces from them (the dispatch payload and the
:class:`StatusUpdate` patch).

Store record layout (Directus ``device_commands`` collection)::

    {
        "id": "8f0c…",
        "command_type": "enroll_fingerprint",
        "status": "pending",
        "fingerprint_id": 12,
        "member_id": "m-7",
        "device_id": {"id": 3, "device_mac": "AA:BB:CC", "device_name": "Door"},
        "date_created": "2026-02-14T12:34:56.000Z"
    }
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from commandbridge._errors import MalformedPayload, UnknownStatus

CommandId = str | int
"""Opaque command identifier, passed through exactly as the store returns it."""


class CommandStatus(StrEnum):
    """Command lifecycle: ``pending → {processing, completed, failed}``."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


REPORTABLE_STATUSES: frozenset[CommandStatus] = frozenset(
    {CommandStatus.PROCESSING, CommandStatus.COMPLETED, CommandStatus.FAILED},
)
"""Statuses a device may report.  ``pending`` is never written back."""

_TOPIC_RESERVED = frozenset("/+#")


@dataclass(frozen=True, slots=True)
class Device:
    """Target device, resolved only for its physical (MAC) address."""

    id: CommandId | None = None
    address: str | None = None
    name: str | None = None

    @classmethod
    def from_record(cls, value: object) -> Device | None:
        """Build from the expanded ``device_id`` relation.

        Returns ``None`` when the relation is empty.  An unexpanded
        reference (a bare id) yields a device without an address.
        """
        if value is None:
            return None
        if not isinstance(value, Mapping):
            return cls(id=value)  # type: ignore[arg-type]
        address = value.get("device_mac")
        if isinstance(address, str):
            address = address.strip() or None
        return cls(
            id=value.get("id"),
            address=address,
            name=value.get("device_name"),
        )

    @property
    def topic_safe(self) -> bool:
        """Whether :attr:`address` can be used as a single topic level."""
        return bool(self.address) and not (_TOPIC_RESERVED & set(self.address or ""))


@dataclass(frozen=True, slots=True)
class Command:
    """Read-side snapshot of one command record."""

    id: CommandId
    type: str | None
    device: Device | None
    params: dict[str, Any] = field(default_factory=dict)
    status: CommandStatus = CommandStatus.PENDING
    result: Any = None
    error_message: str | None = None
    created_at: str | None = None
    executed_at: str | None = None

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        *,
        param_fields: Iterable[str] = (),
    ) -> Command:
        """Build from a store record, gathering *param_fields* into ``params``."""
        return cls(
            id=record["id"],
            type=record.get("command_type"),
            device=Device.from_record(record.get("device_id")),
            params={name: record.get(name) for name in param_fields},
            status=CommandStatus(record.get("status") or CommandStatus.PENDING),
            result=record.get("result"),
            error_message=record.get("error_message"),
            created_at=record.get("date_created"),
            executed_at=record.get("executed_at"),
        )

    @property
    def device_address(self) -> str | None:
        """Physical address of the target device, if it resolves."""
        if self.device is None or not self.device.topic_safe:
            return None
        return self.device.address

    def dispatch_payload(self) -> dict[str, Any]:
        """Message published to ``device/{address}/commands``."""
        return {
            "command_id": self.id,
            "type": self.type,
            "params": dict(self.params),
            "timestamp": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class StatusReport:
    """A device-originated outcome for a previously dispatched command."""

    command_id: CommandId
    status: CommandStatus
    result: Any = None
    error_message: str | None = None


def parse_status_report(payload: str | bytes) -> StatusReport | None:
    """Parse and validate a raw status message.

    Returns:
        The report, or ``None`` for non-command traffic (no
        ``command_id``, e.g. device heartbeats).

    Raises:
        MalformedPayload: The payload is not a JSON object.
        UnknownStatus: ``status`` is not one of the reportable values.
    """
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        msg = f"Invalid JSON payload: {exc}"
        raise MalformedPayload(msg) from exc

    if not isinstance(data, dict):
        msg = f"Expected a JSON object, got {type(data).__name__}"
        raise MalformedPayload(msg)

    command_id = data.get("command_id")
    if command_id is None or command_id == "" or isinstance(command_id, bool):
        return None

    raw_status = data.get("status")
    try:
        status = CommandStatus(raw_status)
    except ValueError:
        raise UnknownStatus(command_id, raw_status) from None
    if status not in REPORTABLE_STATUSES:
        raise UnknownStatus(command_id, raw_status)

    error_message = data.get("error_message")
    if error_message is not None and not isinstance(error_message, str):
        error_message = str(error_message)

    return StatusReport(
        command_id=command_id,
        status=status,
        result=data.get("result"),
        error_message=error_message or None,
    )


@dataclass(frozen=True, slots=True)
class StatusUpdate:
    """Full overwrite of the device-driven fields of a command record.

    Applying the same update twice leaves the record unchanged, which
    makes broker redelivery harmless.
    """

    status: CommandStatus
    result: Any
    error_message: str | None
    executed_at: str

    @classmethod
    def from_report(cls, report: StatusReport, *, executed_at: str) -> StatusUpdate:
        return cls(
            status=report.status,
            result=report.result,
            error_message=report.error_message,
            executed_at=executed_at,
        )

    def to_record(self) -> dict[str, Any]:
        """PATCH body for the item store."""
        return {
            "status": str(self.status),
            "result": self.result,
            "error_message": self.error_message,
            "executed_at": self.executed_at,
        }


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Successful outcome of a dispatch."""

    topic: str
    timestamp: str
    success: bool = True

    def to_dict(self) -> dict[str, object]:
        return {"success": self.success, "topic": self.topic, "timestamp": self.timestamp}
