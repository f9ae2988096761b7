"""Tests for the in-process transport: MemoryNetwork, MemoryListener, MemoryConnector."""

import asyncio

import pytest

from remote_promises.core.errors import ConnectionClosedError, TransportError
from remote_promises.core.messages import Message
from remote_promises.transports.memory import MemoryAddress, MemoryConnector


def _recorder(store):
    async def handler(connection, message):
        store.append(message)

    return handler


def _disconnects(store):
    async def handler(connection):
        store.append(connection.connection_id)

    return handler


class TestMemoryNetwork:
    def test_address(self, network):
        address = network.address("jobs")
        assert isinstance(address, MemoryAddress)
        assert str(address) == "memory://jobs"
        assert address.network is network

    @pytest.mark.asyncio
    async def test_bind_collision(self, network):
        await network.listen("jobs").start()
        with pytest.raises(TransportError, match="already in use"):
            await network.listen("jobs").start()

    @pytest.mark.asyncio
    async def test_close_unbinds(self, network):
        listener = network.listen("jobs")
        await listener.start()
        assert network.is_listening("jobs")
        await listener.close()
        assert not network.is_listening("jobs")


class TestMemoryConnection:
    @pytest.mark.asyncio
    async def test_round_trip(self, network, eventually):
        server_inbox, client_inbox = [], []

        async def accept(connection):
            async def echo(conn, message):
                server_inbox.append(message)
                conn.send(Message.resolve(message.id, message.args[0] * 2))

            connection.on_message(echo)

        listener = network.listen("jobs")
        listener.on_connection(accept)
        await listener.start()

        connector = network.connect("jobs", reconnect_delay=0.01)
        connector.on_message(_recorder(client_inbox))
        await connector.start()
        await connector.wait_connected(timeout=1)

        connector.send(Message.do("r1", [21]))
        await eventually(lambda: client_inbox)
        assert server_inbox == [Message.do("r1", [21])]
        assert client_inbox == [Message.resolve("r1", 42)]

        await connector.close()
        await listener.close()

    @pytest.mark.asyncio
    async def test_accept_handlers_run_before_connected(self, network):
        seen = []
        connector = network.connect("jobs", reconnect_delay=0.01)

        def accept(connection):
            seen.append(connector.connected)

        listener = network.listen("jobs")
        listener.on_connection(accept)
        await listener.start()
        await connector.start()
        await connector.wait_connected(timeout=1)

        assert seen == [False]
        assert len(listener.connections) == 1

        await connector.close()
        await listener.close()

    @pytest.mark.asyncio
    async def test_send_during_accept_reaches_connector(self, network, eventually):
        received = []

        def accept(connection):
            connection.send(Message.do("early", []))

        listener = network.listen("jobs")
        listener.on_connection(accept)
        await listener.start()

        connector = network.connect("jobs", reconnect_delay=0.01)
        connector.on_message(_recorder(received))
        await connector.start()

        await eventually(lambda: received)
        assert received[0].id == "early"

        await connector.close()
        await listener.close()

    @pytest.mark.asyncio
    async def test_outbox_flushed_in_order(self, network, eventually):
        received = []

        def accept(connection):
            connection.on_message(_recorder(received))

        connector = network.connect("jobs", reconnect_delay=0.01, reconnect_delay_max=0.02)
        await connector.start()
        for i in range(3):
            connector.send(Message.do(f"r{i}", [i]))
        assert not connector.connected

        listener = network.listen("jobs")
        listener.on_connection(accept)
        await listener.start()

        await eventually(lambda: len(received) == 3)
        assert [m.id for m in received] == ["r0", "r1", "r2"]

        await connector.close()
        await listener.close()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_delivery(self, network, eventually):
        received = []

        async def flaky(connection, message):
            if message.id == "bad":
                raise RuntimeError("handler blew up")
            received.append(message.id)

        listener = network.listen("jobs")
        listener.on_connection(lambda connection: connection.on_message(flaky))
        await listener.start()

        connector = network.connect("jobs", reconnect_delay=0.01)
        await connector.start()
        connector.send(Message.do("bad", []))
        connector.send(Message.do("good", []))

        await eventually(lambda: received)
        assert received == ["good"]

        await connector.close()
        await listener.close()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_listener_close_notifies_connector_and_redials(self, network, eventually):
        lost = []
        accepted = []

        connector = network.connect("jobs", reconnect_delay=0.01, reconnect_delay_max=0.02)
        connector.on_disconnect(_disconnects(lost))

        first = network.listen("jobs")
        first.on_connection(accepted.append)
        await first.start()
        await connector.start()
        await connector.wait_connected(timeout=1)

        await first.close()
        await eventually(lambda: lost)
        assert lost == [connector.connection_id]
        assert not connector.connected

        connector.send(Message.do("queued", []))

        received = []
        second = network.listen("jobs")
        second.on_connection(lambda connection: connection.on_message(_recorder(received)))
        await second.start()

        await eventually(lambda: received)
        assert received[0].id == "queued"
        assert connector.connected

        await connector.close()
        await second.close()

    @pytest.mark.asyncio
    async def test_connector_close_notifies_peer_only(self, network, eventually):
        peer_lost = []
        local_lost = []

        listener = network.listen("jobs")
        listener.on_connection(lambda connection: connection.on_disconnect(_disconnects(peer_lost)))
        await listener.start()

        connector = network.connect("jobs", reconnect_delay=0.01)
        connector.on_disconnect(_disconnects(local_lost))
        await connector.start()
        await connector.wait_connected(timeout=1)

        await connector.close()
        await eventually(lambda: peer_lost)
        await eventually(lambda: not listener.connections)
        await asyncio.sleep(0.05)
        assert local_lost == []
        assert connector.closed

        await listener.close()

    @pytest.mark.asyncio
    async def test_accepted_send_after_disconnect_is_dropped(self, network, eventually):
        accepted = []
        listener = network.listen("jobs")
        listener.on_connection(accepted.append)
        await listener.start()

        connector = network.connect("jobs", reconnect_delay=0.01)
        await connector.start()
        await connector.wait_connected(timeout=1)
        await connector.close()

        connection = accepted[0]
        await eventually(lambda: not connection.connected)
        connection.send(Message.resolve("late", 1))

        await listener.close()


class TestClosedConnector:
    @pytest.mark.asyncio
    async def test_start_after_close_raises(self, network):
        connector = network.connect("jobs")
        await connector.close()
        with pytest.raises(ConnectionClosedError):
            await connector.start()

    @pytest.mark.asyncio
    async def test_send_after_close_is_dropped(self, network):
        connector = network.connect("jobs")
        await connector.close()
        connector.send(Message.do("r1", []))
        assert isinstance(connector, MemoryConnector)
        assert not connector.connected

    @pytest.mark.asyncio
    async def test_close_while_dialing(self, network):
        connector = network.connect("nobody", reconnect_delay=0.01, reconnect_delay_max=0.02)
        await connector.start()
        await asyncio.sleep(0.05)
        await connector.close()
        assert connector.closed
