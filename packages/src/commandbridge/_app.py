"""Composition roots for the two long-running processes.

- :class:`BridgeApp`: command dispatcher, HTTP trigger surface, poll
  reconciler and dedup cleanup, sharing one broker connection.
- :class:`SubscriberApp`: status consumer applying device reports to
  the item store.

Each process is a single asyncio event loop.  Components own their
state (connection state machine, dedup map, single-flight flag) and
receive their collaborators through constructors; nothing lives in
module-level globals.

Typical usage::

    from commandbridge import BridgeApp

    BridgeApp(version="0.1.0").run()

Orchestration order (both apps):

1. Bootstrap infrastructure (settings, logging, transport).
2. Build components and wire them together.
3. Start background work, block until SIGTERM/SIGINT.
4. Tear down in reverse order.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import signal
import uuid
from typing import Any

from aiohttp import web

from commandbridge._clock import ClockPort, SystemClock, WallClock, utc_now
from commandbridge._consumer import StatusConsumer
from commandbridge._dedup import DedupCache
from commandbridge._dispatcher import CommandDispatcher
from commandbridge._errors import ConfigurationError
from commandbridge._health import HealthReporter
from commandbridge._http import build_http_app
from commandbridge._logging import configure_logging
from commandbridge._reconciler import PollReconciler
from commandbridge._settings import Settings
from commandbridge._store import ItemStoreClient, PendingCommandSource, StatusWriter
from commandbridge._transport import MqttTransport, TransportLifecycle, TransportPort

logger = logging.getLogger(__name__)


class _Service(abc.ABC):
    """Shared bootstrap and teardown for both processes."""

    role = "service"

    def __init__(
        self,
        version: str = "0.0.0",
        *,
        settings_class: type[Settings] = Settings,
    ) -> None:
        """Initialise the process orchestrator.

        Args:
            version: Application version string (logs, ``/health``).
            settings_class: Settings class to instantiate at startup.
        """
        self._version = version
        self._settings_class = settings_class

    @property
    def version(self) -> str:
        return self._version

    def run(self, **overrides: Any) -> None:
        """Start the process (blocking, synchronous entrypoint).

        Keyword arguments are forwarded to ``_run_async`` and are
        intended for programmatic or test use.
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(self._run_async(**overrides))

    @abc.abstractmethod
    async def _run_async(self, **overrides: Any) -> None:
        """Run the process until the shutdown event fires."""

    # --- helpers -----------------------------------------------------------

    def _bootstrap(self, settings: Settings | None) -> Settings:
        resolved = settings if settings is not None else self._settings_class()
        configure_logging(resolved.logging, service=self.role, version=self._version)
        return resolved

    def _create_transport(
        self,
        transport: TransportPort | None,
        settings: Settings,
    ) -> TransportPort:
        """Create the broker adapter, or return the injected one.

        When no explicit ``client_id`` is configured, generates one from
        the process role and a short random suffix (e.g.
        ``"commandbridge-bridge-a1b2c3d4"``).
        """
        if transport is not None:
            return transport
        mqtt_settings = settings.mqtt
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"commandbridge-{self.role}-{uuid.uuid4().hex[:8]}"},
            )
        return MqttTransport(settings=mqtt_settings)

    @staticmethod
    def _install_signal_handlers(shutdown_event: asyncio.Event | None) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event

    @staticmethod
    async def _start_transport(transport: TransportPort, settings: Settings) -> None:
        if isinstance(transport, TransportLifecycle):
            logger.info(
                "Connecting to %s:%d",
                settings.mqtt.host,
                settings.mqtt.port,
            )
            await transport.start()

    @staticmethod
    async def _stop_transport(transport: TransportPort) -> None:
        if isinstance(transport, TransportLifecycle):
            await transport.stop()

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[Any]]) -> None:
        """Cancel background tasks and wait for them to finish."""
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Task error during shutdown: %s", result)


class BridgeApp(_Service):
    """Dispatcher process: HTTP trigger, poll reconciler, dedup cleanup."""

    role = "bridge"

    def __init__(
        self,
        version: str = "0.0.0",
        *,
        settings_class: type[Settings] = Settings,
    ) -> None:
        super().__init__(version, settings_class=settings_class)
        self.addresses: list[Any] = []
        self.dispatcher: CommandDispatcher | None = None
        self.reconciler: PollReconciler | None = None
        self.dedup: DedupCache | None = None

    async def _run_async(  # type: ignore[override]
        self,
        *,
        settings: Settings | None = None,
        transport: TransportPort | None = None,
        store: PendingCommandSource | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
        wall_clock: WallClock | None = None,
    ) -> None:
        """Async orchestration of the bridge process.

        Args:
            settings: Override settings (skip env loading).
            transport: Override broker adapter (inject a mock for tests).
            store: Override the reconciler's store port.  When ``None``
                and a store token is configured, an
                :class:`ItemStoreClient` is created; without a token the
                bridge runs dispatch-only.
            shutdown_event: Override shutdown event (skip signal handlers).
            clock: Override monotonic clock.
            wall_clock: Override wall clock.
        """
        # --- Phase 1: Bootstrap infrastructure ---
        resolved_settings = self._bootstrap(settings)
        resolved_clock = clock if clock is not None else SystemClock()
        resolved_wall_clock = wall_clock if wall_clock is not None else utc_now
        transport = self._create_transport(transport, resolved_settings)

        # --- Phase 2: Build components ---
        owned_store: ItemStoreClient | None = None
        if store is None and resolved_settings.polling_enabled:
            owned_store = ItemStoreClient(resolved_settings.store)
            store = owned_store
        if store is None:
            logger.info("Polling disabled (no STORE__TOKEN)")

        self.dispatcher = CommandDispatcher(
            transport=transport,
            qos=resolved_settings.mqtt.qos,
            wall_clock=resolved_wall_clock,
        )
        self.dedup = DedupCache(
            cooldown=resolved_settings.poll.cooldown,
            clock=resolved_clock,
        )
        self.reconciler = (
            PollReconciler(
                source=store,
                dispatcher=self.dispatcher,
                dedup=self.dedup,
                batch_size=resolved_settings.poll.batch_size,
                interval=resolved_settings.poll.interval,
            )
            if store is not None
            else None
        )
        health = HealthReporter(
            transport=transport,
            polling_enabled=self.reconciler is not None,
            version=self._version,
            clock=resolved_clock,
            wall_clock=resolved_wall_clock,
        )
        secret = resolved_settings.http.secret
        http_app = build_http_app(
            self.dispatcher,
            health,
            secret=secret.get_secret_value() if secret is not None else None,
            dedup=self.dedup,
        )

        # --- Phase 3: Run ---
        shutdown_event = self._install_signal_handlers(shutdown_event)
        runner = web.AppRunner(http_app)
        tasks: list[asyncio.Task[Any]] = []
        try:
            if owned_store is not None:
                await owned_store.start()
            await self._start_transport(transport, resolved_settings)
            await runner.setup()
            site = web.TCPSite(
                runner,
                resolved_settings.http.host,
                resolved_settings.http.port,
            )
            await site.start()
            self.addresses = list(runner.addresses)
            logger.info("Running on port %s", self._bound_port(resolved_settings))

            tasks.append(
                asyncio.create_task(
                    self.dedup.run_cleanup(resolved_settings.poll.cleanup_interval),
                ),
            )
            if self.reconciler is not None:
                tasks.append(asyncio.create_task(self.reconciler.run()))

            await shutdown_event.wait()
        finally:
            # --- Phase 4: Tear down ---
            await self._cancel_tasks(tasks)
            await runner.cleanup()
            if owned_store is not None:
                await owned_store.close()
            await self._stop_transport(transport)

        logger.info("Shutdown complete")

    def _bound_port(self, settings: Settings) -> int:
        for address in self.addresses:
            if isinstance(address, tuple) and len(address) >= 2:  # noqa: PLR2004
                return int(address[1])
        return settings.http.port


class SubscriberApp(_Service):
    """Status consumer process."""

    role = "subscriber"

    def __init__(
        self,
        version: str = "0.0.0",
        *,
        settings_class: type[Settings] = Settings,
    ) -> None:
        super().__init__(version, settings_class=settings_class)
        self.consumer: StatusConsumer | None = None

    async def _run_async(  # type: ignore[override]
        self,
        *,
        settings: Settings | None = None,
        transport: TransportPort | None = None,
        store: StatusWriter | None = None,
        shutdown_event: asyncio.Event | None = None,
        wall_clock: WallClock | None = None,
    ) -> None:
        """Async orchestration of the subscriber process.

        Raises:
            ConfigurationError: No store token is configured and no
                store was injected.  The process must not run without
                a way to record outcomes.
        """
        # --- Phase 1: Bootstrap infrastructure ---
        resolved_settings = self._bootstrap(settings)

        owned_store: ItemStoreClient | None = None
        if store is None:
            if resolved_settings.store.token is None:
                msg = "STORE__TOKEN not set; the status subscriber cannot run"
                raise ConfigurationError(msg)
            owned_store = ItemStoreClient(resolved_settings.store)
            store = owned_store

        logger.info("Store URL: %s", resolved_settings.store.url)
        transport = self._create_transport(transport, resolved_settings)

        # --- Phase 2: Wire consumer ---
        self.consumer = StatusConsumer(
            writer=store,
            wall_clock=wall_clock if wall_clock is not None else utc_now,
        )
        await self.consumer.attach(transport)

        # --- Phase 3: Run ---
        shutdown_event = self._install_signal_handlers(shutdown_event)
        try:
            if owned_store is not None:
                await owned_store.start()
            await self._start_transport(transport, resolved_settings)
            await shutdown_event.wait()
        finally:
            # --- Phase 4: Tear down ---
            await self._stop_transport(transport)
            if owned_store is not None:
                await owned_store.close()

        logger.info("Shutdown complete")
