"""Direct caller that issues requests over one dialing connection.

The caller stashes one :class:`PendingRequest` per call, sends ``do`` right
away and settles the returned future when the matching ``resolve`` or
``reject`` comes back.  When the connection drops it awaits the reconnect
hook (if any) and then re-sends every request that has not settled.

Delivery is at-least-once: a request the runner had already started, or even
finished, before the drop was noticed is executed again after the re-send.
Only issue non-idempotent work if duplicate execution is acceptable.

Example::

    caller = DirectCaller(TcpConnector("127.0.0.1", 3000))
    await caller.start()
    result = await caller.call(2, 3)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from remote_promises.core.errors import (
    CallerClosedError,
    ConnectionClosedError,
    RemoteCallError,
)
from remote_promises.core.logging import get_logger
from remote_promises.core.messages import Message, MessageKind
from remote_promises.core.stash import CorrelationStash, PendingRequest
from remote_promises.transports import Connection, ReconnectingConnection

__all__ = ["CallerHandle", "DirectCaller", "ReconnectHook", "run_reconnect_hook"]

logger = get_logger(__name__)

ReconnectHook = Callable[[], Awaitable[None] | None]


class Caller(Protocol):
    """What :class:`CallerHandle` needs from a caller."""

    def call(self, *args: Any) -> asyncio.Future[Any]: ...

    def on_reconnect(self, hook: ReconnectHook | None) -> Any: ...

    async def close(self) -> None: ...


async def run_reconnect_hook(hook: ReconnectHook | None, participant: str) -> None:
    """Await the reconnect hook; a failing hook is logged and re-issue goes ahead."""
    if hook is None:
        return
    try:
        result = hook()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("caller.reconnect_hook_failed", participant=participant, error=str(e))


def settle(request: PendingRequest, message: Message) -> None:
    """Invoke the continuation matching a settlement message."""
    match message.kind:
        case MessageKind.RESOLVE:
            request.resolve(message.payload)
        case MessageKind.REJECT:
            request.reject(RemoteCallError.from_payload(message.payload, request_id=message.id))


def new_pending(stash: CorrelationStash[PendingRequest], args: tuple[Any, ...]) -> tuple[PendingRequest, asyncio.Future[Any]]:
    """Create a future-backed request and stash it under a fresh id."""
    future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
    request = PendingRequest.for_future(args, future)
    request.id = stash.insert(request)
    return request, future


class DirectCaller:
    """Caller bound to a single connection that it owns."""

    def __init__(self, connection: ReconnectingConnection) -> None:
        self._connection = connection
        self._stash: CorrelationStash[PendingRequest] = CorrelationStash()
        self._reconnect_hook: ReconnectHook | None = None
        self._closed = False
        connection.on_message(self._on_message)
        connection.on_disconnect(self._on_disconnect)

    @property
    def connection(self) -> ReconnectingConnection:
        return self._connection

    @property
    def pending_count(self) -> int:
        return len(self._stash)

    def pending_ids(self) -> list[str]:
        return self._stash.ids()

    async def start(self) -> DirectCaller:
        await self._connection.start()
        return self

    def on_reconnect(self, hook: ReconnectHook | None) -> DirectCaller:
        """Register the hook awaited on disconnect before unsettled requests are re-sent."""
        self._reconnect_hook = hook
        return self

    def call(self, *args: Any) -> asyncio.Future[Any]:
        """Send ``do(id, *args)`` and return a future for its settlement.

        Raises:
            ConnectionClosedError: If the caller has been closed.
        """
        if self._closed:
            raise ConnectionClosedError("caller is closed").with_context(
                connection_id=self._connection.connection_id
            )
        request, future = new_pending(self._stash, args)
        future.add_done_callback(lambda f, request_id=request.id: self._forget_cancelled(request_id, f))
        logger.debug("caller.issued", request_id=request.id)
        self._connection.send(Message.do(request.id, request.args))
        return future

    async def _on_message(self, connection: Connection, message: Message) -> None:
        match message.kind:
            case MessageKind.RESOLVE | MessageKind.REJECT:
                request = self._stash.remove(message.id)
                if request is None:
                    logger.debug("caller.unknown_settlement", request_id=message.id, kind=message.kind.value)
                    return
                settle(request, message)
            case _:
                logger.debug("caller.ignored_message", kind=message.kind.value, request_id=message.id)

    async def _on_disconnect(self, connection: Connection) -> None:
        await run_reconnect_hook(self._reconnect_hook, "caller")
        if self._closed:
            return
        pending = self._stash.items()
        if pending:
            logger.info("caller.reissue", count=len(pending), connection=connection.connection_id)
        for request_id, request in pending:
            self._connection.send(Message.do(request_id, request.args))

    def _forget_cancelled(self, request_id: str, future: asyncio.Future[Any]) -> None:
        if future.cancelled():
            self._stash.remove(request_id)

    async def close(self) -> None:
        """Close the connection and reject whatever is still pending."""
        if self._closed:
            return
        self._closed = True
        await self._connection.close()
        for request in self._stash.clear():
            request.reject(CallerClosedError(request.id))


class CallerHandle:
    """Invocable front for a caller.

    Example::

        call = await client("127.0.0.1:3000")
        call.on_reconnect(restart_runner)
        value = await call(1, 2)
        await call.close()
    """

    def __init__(self, caller: Caller) -> None:
        self._caller = caller

    @property
    def caller(self) -> Caller:
        return self._caller

    def __call__(self, *args: Any) -> asyncio.Future[Any]:
        return self._caller.call(*args)

    def on_reconnect(self, hook: ReconnectHook | None) -> CallerHandle:
        self._caller.on_reconnect(hook)
        return self

    async def close(self) -> None:
        await self._caller.close()

    async def __aenter__(self) -> CallerHandle:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()
