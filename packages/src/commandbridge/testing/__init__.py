"""Public test-support utilities for commandbridge.

Re-exports test doubles and factories so that test suites can import
everything from a single ``commandbridge.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`BridgeHarness` / :class:`SubscriberHarness`: apps wired with
  pre-configured doubles.
- :class:`MockTransport`: in-memory broker double that records calls.
- :class:`InMemoryCommandStore`: item store double for both store ports.
- :class:`FakeClock` / :class:`FixedWallClock`: deterministic clocks.
- :func:`make_settings`: factory for ``Settings`` without ``.env`` files.
"""

from commandbridge._transport import MockTransport
from commandbridge.testing._clock import FakeClock, FixedWallClock
from commandbridge.testing._harness import BridgeHarness, SubscriberHarness
from commandbridge.testing._settings import make_settings
from commandbridge.testing._store import InMemoryCommandStore

__all__ = [
    "BridgeHarness",
    "FakeClock",
    "FixedWallClock",
    "InMemoryCommandStore",
    "MockTransport",
    "SubscriberHarness",
    "make_settings",
]
