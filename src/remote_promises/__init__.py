"""
remote-promises -- correlated remote invocation over persistent connections.

A caller awaits work that a runner performs somewhere else.  Either side may
listen or dial:

* runner listens, caller dials::

    runner = await serve(work, 3000)
    call = await client("ws://localhost:3000")
    result = await call(1, 2)

* caller listens and load-balances across every runner that dials in::

    call = await marshal(3000)
    runner = await provide(work, "ws://localhost:3000")
    result = await call(1, 2)

Lost connections never fail a call: unsettled requests are re-sent (direct
caller) or re-dispatched to another runner (pooled caller).  Delivery is
therefore at-least-once.  A rejection raises :class:`RemoteCallError` with the
runner's payload.

Architecture::

    core/          errors, logging, settings, CorrelationStash, messages
    transports/    Connection/Listener base, memory and TCP transports
    dispatch/      Runner, DirectCaller, PooledCaller
    factory.py     serve / client / provide / marshal
"""

from remote_promises.core.errors import (
    CallerClosedError,
    ConfigError,
    ConnectionClosedError,
    ProtocolError,
    RemoteCallError,
    RemotePromiseError,
    TransportError,
)
from remote_promises.core.settings import RemotePromiseSettings
from remote_promises.dispatch import (
    CallerHandle,
    DirectCaller,
    PooledCaller,
    Runner,
    RunnerClient,
    RunnerServer,
)
from remote_promises.factory import client, marshal, provide, serve
from remote_promises.transports.memory import MemoryNetwork

__version__ = "0.1.0"

__all__ = [
    "CallerClosedError",
    "CallerHandle",
    "ConfigError",
    "ConnectionClosedError",
    "DirectCaller",
    "MemoryNetwork",
    "PooledCaller",
    "ProtocolError",
    "RemoteCallError",
    "RemotePromiseError",
    "RemotePromiseSettings",
    "Runner",
    "RunnerClient",
    "RunnerServer",
    "TransportError",
    "client",
    "marshal",
    "provide",
    "serve",
]
