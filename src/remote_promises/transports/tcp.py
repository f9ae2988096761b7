"""
TCP transport over asyncio streams.

Manifesto:
    Runners and callers on different hosts need a persistent, bidirectional
    connection with a disconnect signal and automatic redial.  asyncio
    streams give all of that without a broker; each protocol message is one
    JSON document on its own line.

Frames that fail to decode are logged and skipped.  A line longer than
``max_line_bytes`` ends the connection, since the stream can no longer be
resynchronized.

Example::

    listener = TcpListener("127.0.0.1", 3000)
    listener.on_connection(accept)
    await listener.start()

    connector = TcpConnector("127.0.0.1", 3000, reconnect_delay=0.1)
    connector.on_message(handle)
    await connector.start()

Tags:
    remote-promises, transport, tcp, asyncio, json-lines

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import contextlib

from remote_promises.core.errors import ProtocolError, TransportError
from remote_promises.core.logging import get_logger
from remote_promises.core.messages import Message, decode, encode
from remote_promises.transports import Connection, Listener, ReconnectingConnection

__all__ = ["TcpConnection", "TcpConnector", "TcpListener"]

logger = get_logger(__name__)

DEFAULT_LIMIT = 16 * 1024 * 1024

_Link = tuple[asyncio.StreamReader, asyncio.StreamWriter]


async def _read_frames(reader: asyncio.StreamReader, connection: Connection) -> None:
    """Deliver decoded lines to ``connection`` until EOF or a stream error."""
    while True:
        try:
            line = await reader.readline()
        except (ConnectionError, asyncio.IncompleteReadError):
            return
        except ValueError as e:
            # readline() raises ValueError once a line outgrows the stream limit
            logger.warning("transport.frame_too_large", connection=connection.connection_id, error=str(e))
            return
        if not line:
            return
        if not line.strip():
            continue
        try:
            message = decode(line)
        except ProtocolError as e:
            logger.warning("transport.bad_frame", connection=connection.connection_id, error=e.message)
            continue
        await connection._deliver(message)


def _write_frame(writer: asyncio.StreamWriter, message: Message, connection: Connection) -> None:
    try:
        frame = encode(message)
    except ProtocolError as e:
        logger.error(
            "transport.encode_failed",
            connection=connection.connection_id,
            request_id=message.id,
            error=e.message,
        )
        return
    writer.write(frame)


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionError, OSError):
        await writer.wait_closed()


class TcpConnection(Connection):
    """An accepted TCP connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        super().__init__()
        self._reader = reader
        self._writer = writer
        self._open = True
        self._closing = False
        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if isinstance(peer, tuple) else str(peer)

    @property
    def connected(self) -> bool:
        return self._open and not self._writer.is_closing()

    def send(self, message: Message) -> None:
        if not self.connected:
            logger.debug(
                "transport.send_dropped",
                connection=self.connection_id,
                request_id=message.id,
                reason="disconnected",
            )
            return
        _write_frame(self._writer, message, self)

    async def close(self) -> None:
        if not self._open:
            return
        self._closing = True
        self._open = False
        await _close_writer(self._writer)

    async def _serve(self) -> None:
        try:
            await _read_frames(self._reader, self)
        finally:
            was_open = self._open
            self._open = False
            if not self._writer.is_closing():
                self._writer.close()
            if was_open and not self._closing:
                self._notify_disconnect()


class TcpListener(Listener):
    """Accepts TCP connections on ``host:port``.

    Pass ``port=0`` to bind an ephemeral port; :attr:`port` reports the
    actual one after :meth:`start`.
    """

    def __init__(self, host: str, port: int, *, limit: int = DEFAULT_LIMIT) -> None:
        super().__init__()
        self.host = host
        self._port = port
        self._limit = limit
        self._server: asyncio.AbstractServer | None = None

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    async def start(self) -> None:
        try:
            self._server = await asyncio.start_server(
                self._handle_client, self.host, self._port, limit=self._limit
            )
        except OSError as e:
            raise TransportError(f"cannot listen: {e}", cause=e).with_context(
                address=f"{self.host}:{self._port}"
            )
        logger.info("transport.listening", address=self.address)

    async def close(self) -> None:
        server = self._server
        if server is None:
            return
        self._server = None
        server.close()
        await self._close_connections()
        await server.wait_closed()
        logger.info("transport.listener_closed", address=f"{self.host}:{self._port}")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._server is None:
            await _close_writer(writer)
            return
        connection = TcpConnection(reader, writer)
        await self._accept(connection)
        await connection._serve()


class TcpConnector(ReconnectingConnection):
    """Dials ``host:port`` and keeps redialing until closed."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 5.0,
        limit: int = DEFAULT_LIMIT,
    ) -> None:
        super().__init__(
            f"{host}:{port}",
            reconnect_delay=reconnect_delay,
            reconnect_delay_max=reconnect_delay_max,
        )
        self.host = host
        self.port = port
        self._limit = limit

    async def _open_link(self) -> _Link:
        return await asyncio.open_connection(self.host, self.port, limit=self._limit)

    async def _run_link(self, link: _Link) -> None:
        reader, writer = link
        try:
            await _read_frames(reader, self)
        finally:
            if not writer.is_closing():
                writer.close()

    def _write(self, link: _Link, message: Message) -> None:
        _write_frame(link[1], message, self)

    async def _close_link(self, link: _Link) -> None:
        await _close_writer(link[1])
