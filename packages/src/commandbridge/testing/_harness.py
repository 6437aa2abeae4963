"""Test harnesses wrapping the two apps with pre-configured doubles.

:class:`BridgeHarness` and :class:`SubscriberHarness` are one-liner
setups for integration-style tests, removing the boilerplate of
creating the app, :class:`~commandbridge._transport.MockTransport`,
clocks, an in-memory store, settings and a shutdown event one by one.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Self

from commandbridge._app import BridgeApp, SubscriberApp
from commandbridge._settings import Settings
from commandbridge._transport import MockTransport
from commandbridge.testing._clock import FakeClock, FixedWallClock
from commandbridge.testing._settings import make_settings
from commandbridge.testing._store import InMemoryCommandStore


@dataclass
class BridgeHarness:
    """Bridge process with test doubles.

    Usage::

        harness = BridgeHarness.create()
        task = asyncio.create_task(harness.run())
        await harness.wait_started()
        ...
        harness.trigger_shutdown()
        await task
    """

    app: BridgeApp
    transport: MockTransport
    store: InMemoryCommandStore | None
    clock: FakeClock
    wall_clock: FixedWallClock
    settings: Settings
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def create(
        cls,
        *,
        version: str = "1.0.0",
        polling: bool = True,
        **settings_overrides: Any,
    ) -> Self:
        """Create a harness with fresh test doubles.

        Args:
            version: App version.
            polling: When False no store is injected and the bridge
                runs dispatch-only.
            **settings_overrides: Forwarded to :func:`make_settings`.
        """
        return cls(
            app=BridgeApp(version),
            transport=MockTransport(),
            store=InMemoryCommandStore() if polling else None,
            clock=FakeClock(),
            wall_clock=FixedWallClock(),
            settings=make_settings(**settings_overrides),
        )

    async def run(self) -> None:
        """Run ``_run_async`` with the harness's test doubles."""
        await self.app._run_async(  # noqa: SLF001
            settings=self.settings,
            transport=self.transport,
            store=self.store,
            shutdown_event=self.shutdown_event,
            clock=self.clock,
            wall_clock=self.wall_clock,
        )

    async def wait_started(self, timeout: float = 2.0) -> None:
        """Block until the HTTP listener is bound."""
        async with asyncio.timeout(timeout):
            while not self.app.addresses:
                await asyncio.sleep(0.01)

    @property
    def base_url(self) -> str:
        host, port = self.app.addresses[0][:2]
        return f"http://{host}:{port}"

    def trigger_shutdown(self) -> None:
        """Signal the shutdown event."""
        self.shutdown_event.set()


@dataclass
class SubscriberHarness:
    """Subscriber process with test doubles."""

    app: SubscriberApp
    transport: MockTransport
    store: InMemoryCommandStore
    wall_clock: FixedWallClock
    settings: Settings
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def create(cls, *, version: str = "1.0.0", **settings_overrides: Any) -> Self:
        return cls(
            app=SubscriberApp(version),
            transport=MockTransport(),
            store=InMemoryCommandStore(),
            wall_clock=FixedWallClock(),
            settings=make_settings(**settings_overrides),
        )

    async def run(self) -> None:
        await self.app._run_async(  # noqa: SLF001
            settings=self.settings,
            transport=self.transport,
            store=self.store,
            shutdown_event=self.shutdown_event,
            wall_clock=self.wall_clock,
        )

    async def wait_started(self, timeout: float = 2.0) -> None:
        """Block until the consumer is subscribed."""
        async with asyncio.timeout(timeout):
            while not self.transport.subscriptions:
                await asyncio.sleep(0.01)

    def trigger_shutdown(self) -> None:
        self.shutdown_event.set()
