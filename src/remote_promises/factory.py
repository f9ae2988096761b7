"""Construction functions: one per orientation and role.

========  ==========  =========  ======================================
function  role        side       returns
========  ==========  =========  ======================================
serve     runner      listens    :class:`RunnerServer`
client    caller      dials      :class:`CallerHandle` (direct)
provide   runner      dials      :class:`RunnerClient`
marshal   caller      listens    :class:`CallerHandle` (pooled)
========  ==========  =========  ======================================

Targets
───────
* ``int`` -- TCP port on ``settings.host``
* ``"host:port"``, ``"tcp://host:port"``, ``"ws://host:port"`` -- TCP
* :class:`~remote_promises.transports.memory.MemoryAddress` -- in-process
* ``None`` -- TCP ``settings.host:settings.port``

Example::

    runner = await serve(lambda: "success", 3000)
    call = await client("ws://localhost:3000")
    assert await call() == "success"
    await call.close()
    await runner.close()
"""

from __future__ import annotations

from urllib.parse import urlsplit

from remote_promises.core.errors import ConfigError
from remote_promises.core.settings import RemotePromiseSettings, get_settings
from remote_promises.dispatch.caller import CallerHandle, DirectCaller
from remote_promises.dispatch.pool import PooledCaller
from remote_promises.dispatch.runner import RunnerClient, RunnerServer, WorkFunction
from remote_promises.transports import Listener, ReconnectingConnection
from remote_promises.transports.memory import MemoryAddress
from remote_promises.transports.tcp import TcpConnector, TcpListener

__all__ = ["Target", "client", "marshal", "parse_tcp_target", "provide", "serve"]

Target = int | str | MemoryAddress | None

_TCP_SCHEMES = {"tcp", "ws", "http"}


def parse_tcp_target(target: int | str | None, settings: RemotePromiseSettings) -> tuple[str, int]:
    """Resolve a TCP target to ``(host, port)``.

    Raises:
        ConfigError: If the target cannot be parsed.
    """
    if target is None:
        return settings.host, settings.port
    if isinstance(target, bool):
        raise ConfigError("target must be a port, address or MemoryAddress")
    if isinstance(target, int):
        return settings.host, target
    if not isinstance(target, str):
        raise ConfigError("target must be a port, address or MemoryAddress").with_context(
            address=repr(target)
        )

    text = target.strip()
    if text.isdigit():
        return settings.host, int(text)
    if "://" not in text:
        text = f"tcp://{text}"

    parts = urlsplit(text)
    if parts.scheme not in _TCP_SCHEMES:
        raise ConfigError(f"unsupported scheme: {parts.scheme}").with_context(address=target)
    try:
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"invalid port: {e}", cause=e).with_context(address=target)
    return parts.hostname or settings.host, port if port is not None else settings.port


def _listener_for(target: Target, settings: RemotePromiseSettings) -> Listener:
    if isinstance(target, MemoryAddress):
        return target.network.listen(target.name)
    host, port = parse_tcp_target(target, settings)
    return TcpListener(host, port, limit=settings.max_line_bytes)


def _connector_for(target: Target, settings: RemotePromiseSettings) -> ReconnectingConnection:
    if isinstance(target, MemoryAddress):
        return target.network.connect(
            target.name,
            reconnect_delay=settings.reconnect_delay,
            reconnect_delay_max=settings.reconnect_delay_max,
        )
    host, port = parse_tcp_target(target, settings)
    return TcpConnector(
        host,
        port,
        reconnect_delay=settings.reconnect_delay,
        reconnect_delay_max=settings.reconnect_delay_max,
        limit=settings.max_line_bytes,
    )


async def serve(
    work: WorkFunction,
    target: Target = None,
    *,
    settings: RemotePromiseSettings | None = None,
) -> RunnerServer:
    """Start a runner that listens on ``target``."""
    settings = settings or get_settings()
    return await RunnerServer(work, _listener_for(target, settings)).start()


async def client(
    target: Target = None,
    *,
    settings: RemotePromiseSettings | None = None,
) -> CallerHandle:
    """Start a direct caller that dials the runner at ``target``."""
    settings = settings or get_settings()
    caller = await DirectCaller(_connector_for(target, settings)).start()
    return CallerHandle(caller)


async def provide(
    work: WorkFunction,
    target: Target = None,
    *,
    settings: RemotePromiseSettings | None = None,
) -> RunnerClient:
    """Start a runner that dials the pooled caller at ``target``."""
    settings = settings or get_settings()
    return await RunnerClient(work, _connector_for(target, settings)).start()


async def marshal(
    target: Target = None,
    *,
    settings: RemotePromiseSettings | None = None,
) -> CallerHandle:
    """Start a pooled caller that listens on ``target`` for runners."""
    settings = settings or get_settings()
    caller = await PooledCaller(_listener_for(target, settings)).start()
    return CallerHandle(caller)
