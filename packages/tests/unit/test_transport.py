"""Tests for commandbridge._transport: connection state and adapters.

Test Techniques Used:
    - State Transition Testing: ConnectionStateMachine legal/illegal moves
    - Specification-based Testing: MockTransport publish contract
    - Mock-based Isolation: aiomqtt patched via sys.modules for MqttTransport
    - Behavioural Testing: reconnect restores subscriptions, inbound
      messages reach handlers
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from commandbridge._errors import PublishFailure, TransportUnavailable
from commandbridge._settings import MqttSettings
from commandbridge._transport import (
    ConnectionState,
    ConnectionStateMachine,
    MockTransport,
    MqttTransport,
    TransportLifecycle,
    TransportPort,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _blocking_messages():
    """Block forever, yielding nothing (an idle broker session)."""
    await asyncio.Event().wait()
    yield  # pragma: no cover


def _connected_transport(settings: MqttSettings | None = None) -> MqttTransport:
    """MqttTransport marked connected with an AsyncMock inner client."""
    transport = MqttTransport(settings=settings or MqttSettings())
    transport._machine.transition(ConnectionState.CONNECTING)  # noqa: SLF001
    transport._machine.transition(ConnectionState.CONNECTED)  # noqa: SLF001
    transport._client = AsyncMock()  # noqa: SLF001
    return transport


@pytest.fixture
def mock_aiomqtt() -> Iterator[tuple[MagicMock, AsyncMock]]:
    """Mock aiomqtt module for testing MqttTransport internals.

    Patches ``sys.modules`` so the lazy ``import aiomqtt`` inside
    ``_connection_loop()`` resolves to a controllable mock.
    """
    mock_module = MagicMock()
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    type(mock_client).messages = property(lambda self: _blocking_messages())
    mock_client.subscribe = AsyncMock()
    mock_client.publish = AsyncMock()

    mock_module.Client.return_value = mock_client
    mock_module.MqttError = type("MqttError", (Exception,), {})

    with patch.dict(sys.modules, {"aiomqtt": mock_module}):
        yield mock_module, mock_client


async def _wait_for(predicate, timeout: float = 1.0) -> None:  # noqa: ANN001
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# ConnectionStateMachine
# ---------------------------------------------------------------------------


class TestConnectionStateMachine:
    """Three-state connection lifecycle.

    Technique: State Transition Testing.
    """

    def test_starts_disconnected(self) -> None:
        assert ConnectionStateMachine().state is ConnectionState.DISCONNECTED

    def test_full_cycle(self) -> None:
        machine = ConnectionStateMachine()
        assert machine.transition(ConnectionState.CONNECTING) is True
        assert machine.transition(ConnectionState.CONNECTED) is True
        assert machine.transition(ConnectionState.DISCONNECTED) is True

    def test_connect_attempt_can_fail(self) -> None:
        machine = ConnectionStateMachine()
        machine.transition(ConnectionState.CONNECTING)
        assert machine.transition(ConnectionState.DISCONNECTED) is True

    def test_same_state_is_noop(self) -> None:
        machine = ConnectionStateMachine()
        assert machine.transition(ConnectionState.DISCONNECTED) is False

    @pytest.mark.parametrize(
        ("path", "illegal"),
        [
            ((), ConnectionState.CONNECTED),
            ((ConnectionState.CONNECTING, ConnectionState.CONNECTED), ConnectionState.CONNECTING),
        ],
    )
    def test_illegal_transition(
        self,
        path: tuple[ConnectionState, ...],
        illegal: ConnectionState,
    ) -> None:
        machine = ConnectionStateMachine()
        for state in path:
            machine.transition(state)
        with pytest.raises(ValueError, match="Illegal connection transition"):
            machine.transition(illegal)

    def test_observers_notified(self) -> None:
        seen: list[tuple[ConnectionState, ConnectionState]] = []
        machine = ConnectionStateMachine()
        machine.subscribe(lambda prev, cur: seen.append((prev, cur)))
        machine.transition(ConnectionState.CONNECTING)
        assert seen == [(ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)]

    def test_failing_observer_does_not_block_transition(self) -> None:
        def broken(prev: ConnectionState, cur: ConnectionState) -> None:
            raise RuntimeError("observer bug")

        machine = ConnectionStateMachine()
        machine.subscribe(broken)
        machine.transition(ConnectionState.CONNECTING)
        assert machine.state is ConnectionState.CONNECTING


# ---------------------------------------------------------------------------
# MockTransport
# ---------------------------------------------------------------------------


class TestMockTransport:
    """Test double honours the port contract.

    Technique: Specification-based Testing.
    """

    def test_satisfies_port(self, mock_transport: MockTransport) -> None:
        assert isinstance(mock_transport, TransportPort)
        assert not isinstance(mock_transport, TransportLifecycle)

    async def test_records_publish(self, mock_transport: MockTransport) -> None:
        await mock_transport.publish("device/AA/commands", "{}", qos=1)
        assert mock_transport.published == [("device/AA/commands", "{}", 1)]
        assert mock_transport.get_messages_for("device/AA/commands") == ["{}"]

    async def test_disconnected_publish_raises(self) -> None:
        transport = MockTransport(connected=False)
        with pytest.raises(TransportUnavailable, match="not connected"):
            await transport.publish("t", "p")
        assert transport.publish_count == 0

    async def test_publish_error_injection(self, mock_transport: MockTransport) -> None:
        mock_transport.publish_error = RuntimeError("broker rejected")
        with pytest.raises(PublishFailure, match="broker rejected"):
            await mock_transport.publish("t", "p")

    async def test_reconnect_cycle(self, mock_transport: MockTransport) -> None:
        states: list[ConnectionState] = []
        mock_transport.on_state_change(lambda prev, cur: states.append(cur))
        mock_transport.set_disconnected()
        mock_transport.set_connected()
        mock_transport.set_connected()
        assert states == [
            ConnectionState.DISCONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]

    async def test_deliver_routes_to_subscriber(self, mock_transport: MockTransport) -> None:
        received: list[str] = []

        async def handler(topic: str, payload: str) -> None:
            received.append(payload)

        await mock_transport.subscribe("device/+/status", handler)
        assert await mock_transport.deliver("device/AA/status", "x") == 1
        assert received == ["x"]
        assert mock_transport.subscriptions == ["device/+/status"]


# ---------------------------------------------------------------------------
# MqttTransport: publish / subscribe
# ---------------------------------------------------------------------------


class TestMqttTransportPublish:
    """Publish contract of the real adapter.

    Technique: Specification-based Testing.
    """

    def test_satisfies_both_protocols(self) -> None:
        transport = MqttTransport(settings=MqttSettings())
        assert isinstance(transport, TransportPort)
        assert isinstance(transport, TransportLifecycle)

    async def test_raises_when_not_connected(self) -> None:
        transport = MqttTransport(settings=MqttSettings())
        with pytest.raises(TransportUnavailable, match="not connected"):
            await transport.publish("t", "p")

    async def test_delegates_to_client(self) -> None:
        transport = _connected_transport()
        await transport.publish("device/AA/commands", "{}", qos=1)
        transport._client.publish.assert_awaited_once_with(  # noqa: SLF001
            "device/AA/commands",
            "{}",
            qos=1,
        )

    async def test_client_error_wrapped(self) -> None:
        transport = _connected_transport()
        transport._client.publish.side_effect = TimeoutError("no PUBACK")  # noqa: SLF001
        with pytest.raises(PublishFailure, match="Publish to t failed"):
            await transport.publish("t", "p")

    async def test_subscribe_while_disconnected_is_deferred(self) -> None:
        transport = MqttTransport(settings=MqttSettings())
        await transport.subscribe("device/+/status", AsyncMock())
        assert transport._router.subscriptions == ["device/+/status"]  # noqa: SLF001

    async def test_subscribe_while_connected_is_sent(self) -> None:
        transport = _connected_transport(MqttSettings(qos=2))
        await transport.subscribe("device/+/status", AsyncMock())
        transport._client.subscribe.assert_awaited_once_with(  # noqa: SLF001
            "device/+/status",
            qos=2,
        )


# ---------------------------------------------------------------------------
# MqttTransport: lifecycle
# ---------------------------------------------------------------------------


class TestMqttTransportLifecycle:
    """Connection loop behaviour against a mocked aiomqtt.

    Technique: State Transition Testing + Mock-based Isolation.
    """

    async def test_start_connects(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        mock_module, _client = mock_aiomqtt
        transport = MqttTransport(
            settings=MqttSettings(url="mqtt://broker.test:1884", client_id="cb-1"),
        )
        await transport.start()
        await _wait_for(lambda: transport.is_connected)

        kwargs = mock_module.Client.call_args.kwargs
        assert kwargs["hostname"] == "broker.test"
        assert kwargs["port"] == 1884
        assert kwargs["identifier"] == "cb-1"
        assert kwargs["tls_context"] is None
        await transport.stop()

    async def test_stop_disconnects_and_is_idempotent(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock],
    ) -> None:
        transport = MqttTransport(settings=MqttSettings())
        await transport.start()
        await _wait_for(lambda: transport.is_connected)
        await transport.stop()
        await transport.stop()
        assert transport.state is ConnectionState.DISCONNECTED
        assert transport._listen_task is None  # noqa: SLF001

    async def test_reconnect_restores_subscriptions(self) -> None:
        """A refused connect is retried and tracked patterns re-sent."""
        settings = MqttSettings(reconnect_interval=0.05)
        mock_module = MagicMock()
        mqtt_error = type("MqttError", (Exception,), {})
        clients: list[AsyncMock] = []

        def client_factory(**_kwargs: object) -> AsyncMock:
            cm = AsyncMock()
            if not clients:
                cm.__aenter__ = AsyncMock(side_effect=mqtt_error("refused"))
            else:
                cm.__aenter__ = AsyncMock(return_value=cm)
                type(cm).messages = property(lambda self: _blocking_messages())
                cm.subscribe = AsyncMock()
            cm.__aexit__ = AsyncMock(return_value=False)
            clients.append(cm)
            return cm

        mock_module.Client = client_factory
        mock_module.MqttError = mqtt_error

        with patch.dict(sys.modules, {"aiomqtt": mock_module}):
            transport = MqttTransport(settings=settings)
            await transport.subscribe("device/+/status", AsyncMock())
            await transport.start()
            await _wait_for(lambda: transport.is_connected)

            assert len(clients) >= 2
            clients[-1].subscribe.assert_awaited_once_with("device/+/status", qos=1)
            await transport.stop()

    async def test_inbound_message_reaches_handler(self) -> None:
        received: asyncio.Queue[tuple[str, str]] = asyncio.Queue()

        async def handler(topic: str, payload: str) -> None:
            await received.put((topic, payload))

        async def one_message():
            yield SimpleNamespace(topic="device/AA/status", payload=b'{"x": 1}')
            await asyncio.Event().wait()

        mock_module = MagicMock()
        mock_client = AsyncMock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        type(mock_client).messages = property(lambda self: one_message())
        mock_module.Client.return_value = mock_client

        with patch.dict(sys.modules, {"aiomqtt": mock_module}):
            transport = MqttTransport(settings=MqttSettings())
            await transport.subscribe("device/+/status", handler)
            await transport.start()
            topic, payload = await asyncio.wait_for(received.get(), timeout=1.0)
            await transport.stop()

        assert topic == "device/AA/status"
        assert payload == '{"x": 1}'
