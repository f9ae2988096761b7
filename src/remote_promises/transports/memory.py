"""
In-process transport.

Manifesto:
    Test suites and single-process deployments need runners and callers that
    talk to each other without sockets, with deterministic accept order and
    the same disconnect/reconnect behaviour as the network transport.

A :class:`MemoryNetwork` maps names to listeners.  A :class:`MemoryConnector`
dials a name; the listener's connection handlers run before the connector
reports itself connected, so accept order follows dial order.  Messages are
passed as :class:`Message` objects, never serialized.

Tags:
    remote-promises, transport, in-memory, asyncio, testing

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from remote_promises.core.errors import TransportError
from remote_promises.core.logging import get_logger
from remote_promises.core.messages import Message
from remote_promises.transports import Connection, Listener, ReconnectingConnection

__all__ = ["MemoryAddress", "MemoryConnection", "MemoryConnector", "MemoryListener", "MemoryNetwork"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class MemoryAddress:
    """A named endpoint on a :class:`MemoryNetwork`."""

    network: MemoryNetwork
    name: str

    def __str__(self) -> str:
        return f"memory://{self.name}"


class MemoryNetwork:
    """Registry of in-process listeners.

    Example::

        network = MemoryNetwork()
        listener = network.listen("jobs")
        await listener.start()
        connector = network.connect("jobs", reconnect_delay=0.01)
        await connector.start()
    """

    def __init__(self) -> None:
        self._listeners: dict[str, MemoryListener] = {}

    def address(self, name: str) -> MemoryAddress:
        return MemoryAddress(self, name)

    def listen(self, name: str) -> MemoryListener:
        return MemoryListener(self, name)

    def connect(
        self,
        name: str,
        *,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 5.0,
    ) -> MemoryConnector:
        return MemoryConnector(
            self,
            name,
            reconnect_delay=reconnect_delay,
            reconnect_delay_max=reconnect_delay_max,
        )

    def is_listening(self, name: str) -> bool:
        return name in self._listeners

    def _bind(self, name: str, listener: MemoryListener) -> None:
        if name in self._listeners:
            raise TransportError("address already in use").with_context(address=f"memory://{name}")
        self._listeners[name] = listener

    def _unbind(self, name: str, listener: MemoryListener) -> None:
        if self._listeners.get(name) is listener:
            del self._listeners[name]

    async def _attach(self, name: str, connector: MemoryConnector) -> MemoryConnection:
        listener = self._listeners.get(name)
        if listener is None:
            raise TransportError("no listener").with_context(address=f"memory://{name}")
        connection = MemoryConnection(name, connector)
        await listener._accept(connection)
        connection._start()
        return connection


class _Endpoint:
    """Inbox and pump shared by both ends of a memory pair."""

    _inbox: asyncio.Queue[Message | None]

    def _receive(self, message: Message) -> None:
        self._inbox.put_nowait(message)

    async def _pump(self, inbox: asyncio.Queue[Message | None]) -> None:
        while True:
            message = await inbox.get()
            if message is None:
                return
            await self._deliver(message)  # type: ignore[attr-defined]


class MemoryConnection(_Endpoint, Connection):
    """The accepted end of a memory pair."""

    def __init__(self, name: str, peer: MemoryConnector) -> None:
        Connection.__init__(self)
        self.address = f"memory://{name}"
        self._peer = peer
        self._inbox = asyncio.Queue()
        self._open = True

    def _start(self) -> None:
        self._spawn(self._pump(self._inbox))

    @property
    def connected(self) -> bool:
        return self._open

    def send(self, message: Message) -> None:
        if not self._open:
            logger.debug(
                "transport.send_dropped",
                connection=self.connection_id,
                request_id=message.id,
                reason="disconnected",
            )
            return
        self._peer._receive(message)

    async def close(self) -> None:
        if not self._open:
            return
        self._sever(notify=False)
        self._peer._link_lost(self)

    def _sever(self, *, notify: bool) -> None:
        if not self._open:
            return
        self._open = False
        self._inbox.put_nowait(None)
        if notify:
            self._notify_disconnect()


class MemoryConnector(_Endpoint, ReconnectingConnection):
    """The dialing end of a memory pair; redials while its listener is away."""

    def __init__(
        self,
        network: MemoryNetwork,
        name: str,
        *,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 5.0,
    ) -> None:
        ReconnectingConnection.__init__(
            self,
            f"memory://{name}",
            reconnect_delay=reconnect_delay,
            reconnect_delay_max=reconnect_delay_max,
        )
        self._network = network
        self._name = name
        self._inbox = asyncio.Queue()

    async def _open_link(self) -> MemoryConnection:
        # The inbox must exist before the listener runs its accept handlers,
        # which may send straight away.
        self._inbox = asyncio.Queue()
        return await self._network._attach(self._name, self)

    async def _run_link(self, link: MemoryConnection) -> None:
        await self._pump(self._inbox)

    def _write(self, link: MemoryConnection, message: Message) -> None:
        link._receive(message)

    async def _close_link(self, link: MemoryConnection) -> None:
        link._sever(notify=True)
        self._inbox.put_nowait(None)

    def _receive(self, message: Message) -> None:
        if self._closed:
            return
        self._inbox.put_nowait(message)

    def _link_lost(self, link: MemoryConnection) -> None:
        if self._link is link:
            self._inbox.put_nowait(None)


class MemoryListener(Listener):
    """Accepts :class:`MemoryConnector` dials under a name."""

    def __init__(self, network: MemoryNetwork, name: str) -> None:
        super().__init__()
        self._network = network
        self._name = name
        self._started = False

    @property
    def address(self) -> str:
        return f"memory://{self._name}"

    async def start(self) -> None:
        self._network._bind(self._name, self)
        self._started = True
        logger.info("transport.listening", address=self.address)

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        self._network._unbind(self._name, self)
        await self._close_connections()
        logger.info("transport.listener_closed", address=self.address)
