"""Error taxonomy for the command bridge.

Every failure the engine can report is a :class:`BridgeError`
subclass carrying two pieces of metadata:

- ``error_type``: machine-readable type string used in HTTP error
  bodies and log lines.
- ``http_status``: the status code the trigger endpoint answers with.

Propagation policy:

- The HTTP trigger returns structured errors to its caller
  (:func:`build_error_payload`).
- The poll reconciler logs and retries on the next cycle, except for
  :class:`DeviceUnresolved`, which is terminal.
- The status consumer never propagates: every failure after message
  receipt is terminal for that message.

Error body schema::

    {
        "error": "MQTT broker not connected",
        "error_type": "transport_unavailable"
    }
"""

from __future__ import annotations

from dataclasses import asdict, dataclass


class BridgeError(Exception):
    """Base class for all command bridge errors."""

    error_type: str = "error"
    http_status: int = 500
    retryable: bool = False


class ConfigurationError(BridgeError):
    """Startup misconfiguration that must prevent the process from running."""

    error_type = "configuration_error"


class ValidationError(BridgeError):
    """Malformed dispatch request (missing topic or payload)."""

    error_type = "validation_error"
    http_status = 400


class AuthError(BridgeError):
    """Missing or invalid bearer credential on the trigger endpoint."""

    error_type = "unauthorized"
    http_status = 401


class TransportUnavailable(BridgeError):
    """The broker connection is down; the caller may retry later."""

    error_type = "transport_unavailable"
    http_status = 503
    retryable = True


class PublishFailure(BridgeError):
    """The broker (or client library) rejected a publish."""

    error_type = "publish_failure"


class DeviceUnresolved(BridgeError):
    """A command's device reference has no physical address.

    Terminal: the command is marked failed and never retried.
    """

    error_type = "device_unresolved"
    http_status = 422

    def __init__(self, command_id: str, message: str) -> None:
        super().__init__(message)
        self.command_id = command_id


class MalformedPayload(BridgeError):
    """A status report that is not a JSON object."""

    error_type = "malformed_payload"
    http_status = 400


class UnknownStatus(BridgeError):
    """A status report whose status is not a device-reportable value."""

    error_type = "unknown_status"
    http_status = 400

    def __init__(self, command_id: str, status: object) -> None:
        super().__init__(f"Invalid status {status!r} for command {command_id}")
        self.command_id = command_id
        self.status = status


class StoreError(BridgeError):
    """A request to the item store failed.

    Attributes:
        status: HTTP status returned by the store, or ``None`` when the
            request never got a response (connection refused, timeout).
        detail: First error message reported by the store, if any.
        unreachable: The connection to the store could not be
            established (e.g. connection refused).
    """

    error_type = "store_error"
    http_status = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        detail: str | None = None,
        unreachable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail
        self.unreachable = unreachable


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error body returned by the trigger endpoint."""

    error: str
    error_type: str

    def to_dict(self) -> dict[str, object]:
        """Serialise to a plain dict."""
        return asdict(self)


def build_error_payload(error: Exception) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    :class:`BridgeError` subclasses contribute their own
    ``error_type``; anything else falls back to the generic
    ``"error"`` type.
    """
    error_type = error.error_type if isinstance(error, BridgeError) else "error"
    return ErrorPayload(
        error=str(error) or error_type,
        error_type=error_type,
    )
