"""Runner: executes ``do`` requests and sends back their settlement.

WHY
───
Request messages can arrive more than once for the same correlation id: a
caller re-issues everything unsettled after a reconnect, and a pooled caller
re-dispatches a lost worker's requests.  The runner must not start the same
work twice while it is still running, and the settlement must go out on
whichever connection asked most recently.

ARCHITECTURE
────────────
::

    Runner(work)
      ├── .attach(connection)   ─ listen for ``do`` on a connection
      ├── ExecutionGuard        ─ id -> connection while executing
      └── ._execute(id, args)   ─ run work, send resolve/reject

    Per request id:   UNSEEN ──do──▶ EXECUTING ──done──▶ (guard cleared)
                                      │   ▲
                                      └do─┘  (connection updated, no re-run)

    RunnerServer(work, listener)    ─ runner listens, callers connect
    RunnerClient(work, connector)   ─ runner dials a listening caller

Nothing is remembered about finished ids.  A ``do`` that arrives after its
settlement went out executes again (at-least-once).

Example::

    async def work(x, y):
        return x + y

    runner = RunnerServer(work, TcpListener("127.0.0.1", 3000))
    await runner.start()
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from remote_promises.core.errors import error_payload
from remote_promises.core.logging import get_logger
from remote_promises.core.messages import Message, MessageKind
from remote_promises.transports import Connection, Listener, ReconnectingConnection

__all__ = ["ExecutionGuard", "Runner", "RunnerClient", "RunnerServer", "WorkFunction"]

logger = get_logger(__name__)

WorkFunction = Callable[..., Any]


class ExecutionGuard:
    """Tracks requests currently executing and where to answer them."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def enter(self, request_id: str, connection: Connection) -> bool:
        """Record ``connection`` for ``request_id``.

        Returns:
            True if the id was not executing, meaning the caller must start it.
        """
        first = request_id not in self._connections
        self._connections[request_id] = connection
        return first

    def connection_for(self, request_id: str) -> Connection | None:
        return self._connections.get(request_id)

    def leave(self, request_id: str) -> Connection | None:
        return self._connections.pop(request_id, None)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)


class Runner:
    """Executes a work function once per distinct executing request id.

    ``work`` may be a plain function, a function returning an awaitable, or a
    coroutine function.  Raising :class:`~remote_promises.core.errors.RemoteCallError`
    rejects with its payload verbatim; any other exception rejects with
    ``{"type": ..., "message": ...}``.
    """

    def __init__(self, work: WorkFunction) -> None:
        self._work = work
        self._guard = ExecutionGuard()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def guard(self) -> ExecutionGuard:
        return self._guard

    @property
    def executing_count(self) -> int:
        return len(self._guard)

    def attach(self, connection: Connection) -> None:
        connection.on_message(self._on_message)

    async def _on_message(self, connection: Connection, message: Message) -> None:
        match message.kind:
            case MessageKind.DO:
                self._on_do(connection, message)
            case _:
                logger.debug(
                    "runner.ignored_message",
                    kind=message.kind.value,
                    request_id=message.id,
                    connection=connection.connection_id,
                )

    def _on_do(self, connection: Connection, message: Message) -> None:
        if not self._guard.enter(message.id, connection):
            logger.debug(
                "runner.duplicate_request",
                request_id=message.id,
                connection=connection.connection_id,
            )
            return
        task = asyncio.create_task(self._execute(message.id, message.args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, request_id: str, args: tuple[Any, ...]) -> None:
        logger.debug("runner.executing", request_id=request_id)
        try:
            try:
                result = self._work(*args)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                payload = error_payload(e)
                logger.info("runner.rejected", request_id=request_id, error=str(e))
                self._reply(Message.reject(request_id, payload))
            else:
                logger.debug("runner.resolved", request_id=request_id)
                self._reply(Message.resolve(request_id, result))
        finally:
            self._guard.leave(request_id)

    def _reply(self, message: Message) -> None:
        connection = self._guard.connection_for(message.id)
        if connection is None:
            return
        connection.send(message)

    async def cancel_all(self) -> None:
        """Cancel every executing request and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class RunnerServer:
    """A runner that listens; each accepted connection is served by one :class:`Runner`."""

    def __init__(self, work: WorkFunction, listener: Listener) -> None:
        self.runner = Runner(work)
        self.listener = listener
        listener.on_connection(self.runner.attach)

    @property
    def address(self) -> str:
        return self.listener.address

    async def start(self) -> RunnerServer:
        await self.listener.start()
        return self

    async def close(self) -> None:
        await self.listener.close()
        await self.runner.cancel_all()

    async def __aenter__(self) -> RunnerServer:
        return await self.start()

    async def __aexit__(self, *args) -> None:
        await self.close()


class RunnerClient:
    """A runner that dials a listening (pooled) caller and redials after losing it."""

    def __init__(self, work: WorkFunction, connector: ReconnectingConnection) -> None:
        self.runner = Runner(work)
        self.connection = connector
        self.runner.attach(connector)

    async def start(self) -> RunnerClient:
        await self.connection.start()
        return self

    async def wait_connected(self, timeout: float | None = None) -> None:
        await self.connection.wait_connected(timeout)

    async def close(self) -> None:
        await self.connection.close()
        await self.runner.cancel_all()

    async def __aenter__(self) -> RunnerClient:
        return await self.start()

    async def __aexit__(self, *args) -> None:
        await self.close()
