"""Device topic layout.

Topic convention::

    device/{address}/commands   → published by the bridge (command delivery)
    device/{address}/status     → published by devices (outcome reports)

``{address}`` is the device MAC address exactly as stored in the item
store, e.g. ``device/AA:BB:CC/commands``.
"""

from __future__ import annotations

COMMAND_TOPIC_TEMPLATE = "device/{address}/commands"
STATUS_TOPIC_PATTERN = "device/+/status"

_ROOT = "device"
_STATUS = "status"


def command_topic(address: str) -> str:
    """Return the command topic for the device at *address*."""
    return COMMAND_TOPIC_TEMPLATE.format(address=address)


def device_from_status_topic(topic: str) -> str | None:
    """Extract the device address from ``device/{address}/status``.

    Returns ``None`` for topics that do not follow the layout.
    """
    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != _ROOT or parts[2] != _STATUS:  # noqa: PLR2004
        return None
    return parts[1] or None
