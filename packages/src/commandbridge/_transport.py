"""Broker transport port and adapters.

Provides :class:`TransportPort` (Protocol) and two implementations:

- :class:`MqttTransport`: real aiomqtt-based adapter with a background
  connection loop and fixed-interval reconnection
- :class:`MockTransport`: test double that records publishes and
  simulates inbound messages and connection changes

Design decisions:

- Connection liveness is an explicit 3-state machine
  (:class:`ConnectionState`) owned by the adapter instance.  Every
  transition is logged and delivered to observers registered with
  ``on_state_change()``.
- ``publish()`` fails fast with :class:`TransportUnavailable` while the
  state is not ``connected``: messages are never queued locally.
- aiomqtt is imported lazily inside ``MqttTransport._connection_loop()``
  so the mock works without the dependency installed.
- Subscriptions are tracked by a :class:`TopicRouter` and restored on
  every reconnect.
- Inbound messages are routed on their own tasks so a slow handler
  (e.g. a slow item store) never stalls message consumption.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from commandbridge._errors import PublishFailure, TransportUnavailable
from commandbridge._router import MessageHandler, TopicRouter
from commandbridge._settings import MqttSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Connection state machine
# ---------------------------------------------------------------------------


class ConnectionState(StrEnum):
    """Broker connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


StateObserver = Callable[[ConnectionState, ConnectionState], None]
"""Callback receiving ``(previous, current)`` on every transition."""

_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED}),
}


class ConnectionStateMachine:
    """Tracks the connection state and notifies observers of transitions.

    Transitions to the current state are no-ops.  Any other transition
    not in the ``disconnected → connecting → connected → disconnected``
    cycle (``connecting → disconnected`` allowed) raises ``ValueError``.
    """

    def __init__(self, *, name: str = "mqtt") -> None:
        self._name = name
        self._state = ConnectionState.DISCONNECTED
        self._observers: list[StateObserver] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    def subscribe(self, observer: StateObserver) -> None:
        """Register *observer* for future transitions."""
        self._observers.append(observer)

    def transition(self, new: ConnectionState) -> bool:
        """Move to *new*, notifying observers.

        Returns:
            True when the state changed.
        """
        previous = self._state
        if new is previous:
            return False
        if new not in _ALLOWED_TRANSITIONS[previous]:
            msg = f"Illegal connection transition {previous} -> {new}"
            raise ValueError(msg)

        self._state = new

        logger.info("%s connection: %s -> %s", self._name, previous, new)
        for observer in list(self._observers):
            try:
                observer(previous, new)
            except Exception:
                logger.exception("Connection state observer failed")
        return True


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class TransportPort(Protocol):
    """Port contract for broker publish/subscribe.

    All broker interaction goes through this protocol so adapters are
    swappable.
    """

    @property
    def state(self) -> ConnectionState: ...

    @property
    def is_connected(self) -> bool: ...

    def on_state_change(self, observer: StateObserver) -> None: ...

    async def publish(self, topic: str, payload: str, *, qos: int = 1) -> None: ...

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None: ...


@runtime_checkable
class TransportLifecycle(Protocol):
    """Adapters with a background connection to start and stop."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockTransport:
    """In-memory test double that honours the :class:`TransportPort` contract.

    Starts ``connected`` unless ``connected=False`` is passed.  While
    disconnected, ``publish()`` raises :class:`TransportUnavailable`
    without recording anything.  Set ``publish_error`` to make the next
    publishes fail as if the broker rejected them.
    """

    connected: bool = True
    published: list[tuple[str, str, int]] = field(default_factory=list)
    subscriptions: list[str] = field(default_factory=list)
    publish_error: Exception | None = None
    _router: TopicRouter = field(default_factory=TopicRouter, init=False, repr=False)
    _machine: ConnectionStateMachine = field(
        default_factory=lambda: ConnectionStateMachine(name="mock"),
        init=False,
        repr=False,
    )

    def __post_init__(self) -> None:
        if self.connected:
            self.set_connected()

    # -- TransportPort ------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def is_connected(self) -> bool:
        return self._machine.state is ConnectionState.CONNECTED

    def on_state_change(self, observer: StateObserver) -> None:
        self._machine.subscribe(observer)

    async def publish(self, topic: str, payload: str, *, qos: int = 1) -> None:
        """Record a publish, or fail like the real adapter would."""
        if not self.is_connected:
            msg = "MQTT broker not connected"
            raise TransportUnavailable(msg)
        if self.publish_error is not None:
            raise PublishFailure(str(self.publish_error)) from self.publish_error
        self.published.append((topic, payload, qos))

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        """Record a subscription and route matching deliveries to *handler*."""
        if self._router.register(pattern, handler):
            self.subscriptions.append(pattern)

    # -- Test helpers -------------------------------------------------------

    def set_connected(self) -> None:
        """Simulate a successful (re)connection."""
        if self.is_connected:
            return
        self._machine.transition(ConnectionState.CONNECTING)
        self._machine.transition(ConnectionState.CONNECTED)

    def set_disconnected(self) -> None:
        """Simulate a lost connection."""
        self._machine.transition(ConnectionState.DISCONNECTED)

    async def deliver(self, topic: str, payload: str) -> int:
        """Simulate an inbound message; returns the number of handlers run."""
        return await self._router.route(topic, payload)

    @property
    def publish_count(self) -> int:
        return len(self.published)

    def get_messages_for(self, topic: str) -> list[str]:
        """Return payloads published to *topic*, oldest first."""
        return [payload for t, payload, _qos in self.published if t == topic]

    def reset(self) -> None:
        """Clear recorded publishes (subscriptions and state are kept)."""
        self.published.clear()


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttTransport:
    """Production broker adapter backed by *aiomqtt*.

    A background task keeps a persistent session: on any connection
    failure it waits ``settings.reconnect_interval`` seconds and tries
    again, forever, until :meth:`stop` is called.
    """

    settings: MqttSettings

    _router: TopicRouter = field(default_factory=TopicRouter, init=False, repr=False)
    _machine: ConnectionStateMachine = field(
        default_factory=ConnectionStateMachine,
        init=False,
        repr=False,
    )
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _handler_tasks: set[asyncio.Task[int]] = field(
        default_factory=set,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    # -- TransportPort ------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def is_connected(self) -> bool:
        """Whether the client currently holds a broker session."""
        return self._machine.state is ConnectionState.CONNECTED

    def on_state_change(self, observer: StateObserver) -> None:
        self._machine.subscribe(observer)

    async def publish(self, topic: str, payload: str, *, qos: int = 1) -> None:
        """Publish and wait for the broker's acknowledgement (QoS >= 1).

        Raises:
            TransportUnavailable: The client is not connected.  Nothing
                is sent or queued.
            PublishFailure: The broker or client library rejected the
                publish (including aiomqtt's operation timeout).
        """
        client = self._client
        if client is None or not self.is_connected:
            msg = "MQTT broker not connected"
            raise TransportUnavailable(msg)
        try:
            await client.publish(topic, payload, qos=qos)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            msg = f"Publish to {topic} failed: {exc}"
            raise PublishFailure(msg) from exc
        logger.debug("Published to %s (qos=%d)", topic, qos)

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        """Route messages matching *pattern* to *handler*.

        The subscription is tracked so it can be restored after a
        reconnection.  When currently disconnected it is sent to the
        broker on the next successful connect.
        """
        is_new = self._router.register(pattern, handler)
        client = self._client
        if is_new and client is not None:
            await client.subscribe(pattern, qos=self.settings.qos)
            logger.info("Subscribed to %s", pattern)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttTransport.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Stop the connection loop and in-flight handlers.

        Idempotent: safe to call multiple times.
        """
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        for task in list(self._handler_tasks):
            task.cancel()
        if self._handler_tasks:
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)
        self._client = None
        self._machine.transition(ConnectionState.DISCONNECTED)

    # -- Internal -----------------------------------------------------------

    async def _connection_loop(self) -> None:
        """Maintain a persistent connection with fixed-interval reconnect."""
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttTransport"
            raise RuntimeError(msg) from exc

        password: str | None = None
        if self.settings.password is not None:
            password = self.settings.password.get_secret_value()
        tls_context = ssl.create_default_context() if self.settings.tls else None

        while not self._stopping:
            self._machine.transition(ConnectionState.CONNECTING)
            try:
                async with aiomqtt.Client(
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.settings.username,
                    password=password,
                    identifier=self.settings.client_id or None,
                    timeout=self.settings.connect_timeout,
                    tls_context=tls_context,
                ) as client:
                    self._client = client
                    try:
                        for pattern in self._router.subscriptions:
                            await client.subscribe(pattern, qos=self.settings.qos)

                        self._machine.transition(ConnectionState.CONNECTED)
                        logger.info(
                            "MQTT connected to %s:%d",
                            self.settings.host,
                            self.settings.port,
                        )

                        async for message in client.messages:
                            self._dispatch(message)
                    finally:
                        self._client = None
                        self._machine.transition(ConnectionState.DISCONNECTED)

            except asyncio.CancelledError:
                raise
            except Exception:
                self._machine.transition(ConnectionState.DISCONNECTED)
                logger.warning(
                    "MQTT connection lost, reconnecting in %.1fs",
                    self.settings.reconnect_interval,
                    exc_info=True,
                )
                await asyncio.sleep(self.settings.reconnect_interval)

    def _dispatch(self, message: Any) -> None:
        """Decode an inbound message and route it on its own task."""
        topic = str(message.topic)

        if message.payload is None:
            logger.debug("Skipping message with None payload on %s", topic)
            return

        payload = (
            message.payload.decode("utf-8", errors="replace")
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload)
        )

        task = asyncio.create_task(self._router.route(topic, payload))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)
