"""Connection transports for remote-promises.

Why This Package Exists
-----------------------
Runners and callers only need four things from the wire: send a named message
on a connection, receive named messages on it, learn when it drops, and (for
the dialing side) get it back.  Keeping those behind :class:`Connection` and
:class:`Listener` lets the dispatch layer stay identical whether the peers
share a process or sit on different hosts.

Usage::

    from remote_promises.transports.memory import MemoryNetwork

    network = MemoryNetwork()
    listener = network.listen("jobs")
    listener.on_connection(accept)
    await listener.start()

    connector = network.connect("jobs")
    connector.on_message(handle)
    connector.on_disconnect(lost)
    await connector.start()
    connector.send(Message.do(request_id, [1, 2]))

Semantics shared by all transports:

* ``send`` is synchronous and never raises.  Accepted connections that have
  gone away drop the message; connectors buffer it until they reconnect.
* Messages on one connection are delivered in order; each message handler is
  awaited before the next message is delivered.
* Disconnect handlers run as their own tasks, so they may wait for the
  connector to come back.
* A deliberate local ``close()`` does not notify the local disconnect
  handlers; the peer is notified.

Modules
-------
memory      MemoryNetwork -- in-process pairs, single event loop
tcp         TcpListener / TcpConnector -- asyncio streams, JSON lines
"""

from __future__ import annotations

import abc
import asyncio
import inspect
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from remote_promises.core.errors import ConnectionClosedError, TransportError
from remote_promises.core.logging import get_logger
from remote_promises.core.messages import Message

__all__ = [
    "Connection",
    "ConnectionHandler",
    "DisconnectHandler",
    "Listener",
    "MessageHandler",
    "ReconnectingConnection",
]

logger = get_logger(__name__)

MessageHandler = Callable[["Connection", Message], Awaitable[None]]
DisconnectHandler = Callable[["Connection"], Awaitable[None]]
ConnectionHandler = Callable[["Connection"], Awaitable[None] | None]


# ── Connection ───────────────────────────────────────────────────────────


class Connection(abc.ABC):
    """One end of a bidirectional message connection."""

    def __init__(self, connection_id: str | None = None) -> None:
        self.connection_id = connection_id or f"conn-{uuid.uuid4().hex[:12]}"
        self._message_handlers: list[MessageHandler] = []
        self._disconnect_handlers: list[DisconnectHandler] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def on_message(self, handler: MessageHandler) -> None:
        """Register an async ``handler(connection, message)``."""
        self._message_handlers.append(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        """Register an async ``handler(connection)`` fired when the peer goes away."""
        self._disconnect_handlers.append(handler)

    @abc.abstractmethod
    def send(self, message: Message) -> None:
        """Send a message without blocking."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the connection."""

    @property
    @abc.abstractmethod
    def connected(self) -> bool:
        """Whether a live peer is attached right now."""

    async def _deliver(self, message: Message) -> None:
        for handler in list(self._message_handlers):
            try:
                await handler(self, message)
            except Exception as e:
                logger.warning(
                    "transport.handler_error",
                    connection=self.connection_id,
                    kind=message.kind.value,
                    request_id=message.id,
                    error=str(e),
                )

    def _notify_disconnect(self) -> None:
        for handler in list(self._disconnect_handlers):
            self._spawn(self._run_disconnect_handler(handler))

    async def _run_disconnect_handler(self, handler: DisconnectHandler) -> None:
        try:
            await handler(self)
        except Exception as e:
            logger.warning(
                "transport.disconnect_handler_error",
                connection=self.connection_id,
                error=str(e),
            )

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.connection_id!r}, connected={self.connected})"


# ── Reconnecting connector ───────────────────────────────────────────────


class ReconnectingConnection(Connection):
    """The dialing end of a connection.

    Keeps redialing its target until closed.  The first redial waits
    ``reconnect_delay`` seconds and the delay doubles up to
    ``reconnect_delay_max``.  Messages sent while no link is up are kept in
    an outbox and flushed, in order, once the next link comes up.

    Subclasses supply the link primitives: :meth:`_open_link`,
    :meth:`_run_link`, :meth:`_write` and :meth:`_close_link`.
    """

    def __init__(
        self,
        address: str,
        *,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 5.0,
        connection_id: str | None = None,
    ) -> None:
        super().__init__(connection_id)
        self.address = address
        self._reconnect_delay = reconnect_delay
        self._reconnect_delay_max = reconnect_delay_max
        self._outbox: deque[Message] = deque()
        self._link: Any = None
        self._linked = asyncio.Event()
        self._closed = False
        self._dial_task: asyncio.Task[None] | None = None

    # ── Link primitives ──────────────────────────────────────────────

    @abc.abstractmethod
    async def _open_link(self) -> Any:
        """Establish a link, raising ``OSError`` or ``TransportError`` on failure."""

    @abc.abstractmethod
    async def _run_link(self, link: Any) -> None:
        """Receive on ``link`` until it is lost or closed."""

    @abc.abstractmethod
    def _write(self, link: Any, message: Message) -> None:
        """Write one message to ``link``."""

    @abc.abstractmethod
    async def _close_link(self, link: Any) -> None:
        """Tear ``link`` down so that :meth:`_run_link` returns."""

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start dialing in the background."""
        if self._closed:
            raise ConnectionClosedError("connector is closed").with_context(
                connection_id=self.connection_id, address=self.address
            )
        if self._dial_task is None:
            self._dial_task = asyncio.create_task(self._dial_loop())

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Wait until a link is up."""
        await asyncio.wait_for(self._linked.wait(), timeout=timeout)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        link = self._link
        if link is not None:
            await self._close_link(link)
        if self._dial_task is not None:
            self._dial_task.cancel()
            try:
                await self._dial_task
            except asyncio.CancelledError:
                pass
        self._outbox.clear()
        logger.debug("transport.connector_closed", connection=self.connection_id)

    @property
    def connected(self) -> bool:
        return self._link is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: Message) -> None:
        if self._closed:
            logger.debug(
                "transport.send_dropped",
                connection=self.connection_id,
                request_id=message.id,
                reason="closed",
            )
            return
        if self._link is None:
            self._outbox.append(message)
            return
        self._write(self._link, message)

    async def _dial_loop(self) -> None:
        delay = self._reconnect_delay
        while not self._closed:
            try:
                link = await self._open_link()
            except (OSError, TransportError) as e:
                logger.debug(
                    "transport.dial_failed",
                    address=self.address,
                    error=str(e),
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._reconnect_delay_max)
                continue

            delay = self._reconnect_delay
            self._link = link
            self._linked.set()
            logger.info("transport.connected", address=self.address, connection=self.connection_id)
            while self._outbox and self._link is link:
                self._write(link, self._outbox.popleft())

            try:
                await self._run_link(link)
            finally:
                self._link = None
                self._linked.clear()

            if self._closed:
                break
            logger.info("transport.disconnected", address=self.address, connection=self.connection_id)
            self._notify_disconnect()
            await asyncio.sleep(delay)


# ── Listener ─────────────────────────────────────────────────────────────


class Listener(abc.ABC):
    """Accepts connections at an address."""

    def __init__(self) -> None:
        self._connection_handlers: list[ConnectionHandler] = []
        self._connections: dict[str, Connection] = {}

    def on_connection(self, handler: ConnectionHandler) -> None:
        """Register ``handler(connection)``, run before the connection receives anything."""
        self._connection_handlers.append(handler)

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """Printable address the listener is bound to."""

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin accepting connections."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Stop accepting and close every accepted connection."""

    async def _accept(self, connection: Connection) -> None:
        self._connections[connection.connection_id] = connection
        connection.on_disconnect(self._forget)
        logger.info("transport.accepted", address=self.address, connection=connection.connection_id)
        for handler in list(self._connection_handlers):
            try:
                result = handler(connection)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "transport.accept_handler_error",
                    address=self.address,
                    connection=connection.connection_id,
                    error=str(e),
                )

    async def _forget(self, connection: Connection) -> None:
        self._connections.pop(connection.connection_id, None)

    async def _close_connections(self) -> None:
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await connection.close()
