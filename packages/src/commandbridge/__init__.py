"""commandbridge.

Command dispatch and reconciliation between an item store and
MQTT-connected devices.
"""

from importlib.metadata import PackageNotFoundError, version

from commandbridge._app import BridgeApp, SubscriberApp
from commandbridge._clock import ClockPort, SystemClock, isoformat, utc_now
from commandbridge._consumer import StatusConsumer, StatusOutcome
from commandbridge._dedup import DedupCache
from commandbridge._dispatcher import CommandDispatcher
from commandbridge._errors import (
    AuthError,
    BridgeError,
    ConfigurationError,
    DeviceUnresolved,
    ErrorPayload,
    MalformedPayload,
    PublishFailure,
    StoreError,
    TransportUnavailable,
    UnknownStatus,
    ValidationError,
    build_error_payload,
)
from commandbridge._health import HealthReporter, HealthSnapshot
from commandbridge._http import build_http_app
from commandbridge._logging import JsonFormatter, configure_logging
from commandbridge._models import (
    Command,
    CommandStatus,
    Device,
    DispatchResult,
    StatusReport,
    StatusUpdate,
    parse_status_report,
)
from commandbridge._reconciler import CycleReport, PollReconciler
from commandbridge._settings import (
    HttpSettings,
    LoggingSettings,
    MqttSettings,
    PollSettings,
    Settings,
    StoreSettings,
)
from commandbridge._store import ItemStoreClient, PendingCommandSource, StatusWriter
from commandbridge._topics import command_topic, device_from_status_topic
from commandbridge._transport import (
    ConnectionState,
    ConnectionStateMachine,
    MockTransport,
    MqttTransport,
    TransportLifecycle,
    TransportPort,
)

try:
    __version__ = version("commandbridge")
except PackageNotFoundError:
    # Editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Apps
    "BridgeApp",
    "SubscriberApp",
    # Clock
    "ClockPort",
    "SystemClock",
    "isoformat",
    "utc_now",
    # Core components
    "CommandDispatcher",
    "CycleReport",
    "DedupCache",
    "PollReconciler",
    "StatusConsumer",
    "StatusOutcome",
    # Errors
    "AuthError",
    "BridgeError",
    "ConfigurationError",
    "DeviceUnresolved",
    "ErrorPayload",
    "MalformedPayload",
    "PublishFailure",
    "StoreError",
    "TransportUnavailable",
    "UnknownStatus",
    "ValidationError",
    "build_error_payload",
    # HTTP / health
    "HealthReporter",
    "HealthSnapshot",
    "build_http_app",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Models
    "Command",
    "CommandStatus",
    "Device",
    "DispatchResult",
    "StatusReport",
    "StatusUpdate",
    "parse_status_report",
    # Settings
    "HttpSettings",
    "LoggingSettings",
    "MqttSettings",
    "PollSettings",
    "Settings",
    "StoreSettings",
    # Store
    "ItemStoreClient",
    "PendingCommandSource",
    "StatusWriter",
    # Topics
    "command_topic",
    "device_from_status_topic",
    # Transport
    "ConnectionState",
    "ConnectionStateMachine",
    "MockTransport",
    "MqttTransport",
    "TransportLifecycle",
    "TransportPort",
]
