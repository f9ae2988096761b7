"""Pooled caller: listens for runners and balances requests across them.

WHY
───
In the flipped orientation the caller listens and any number of runners dial
in.  Each accepted connection becomes a :class:`Worker`; requests wait in an
ordered pending pool and are handed to the least-loaded worker.  When a
worker drops, whatever it still had in flight goes back to the pool and is
dispatched to whoever is left, or waits for the next runner to connect.

ARCHITECTURE
────────────
::

    PooledCaller(listener)
      ├── .call(*args)          ─ stash + pending pool + dispatch
      ├── ._dispatch()          ─ greedy least-loaded, one id at a time
      ├── workers               ─ connection_id -> Worker (accept order)
      └── on worker disconnect  ─ reconnect hook, re-queue, dispatch

    Each id is in exactly one place:
        pending pool  XOR  one worker's in_flight_ids  XOR  settled

The selection re-scans all workers for every pending id, O(ids x workers);
ties go to the worker that connected first.

Delivery is at-least-once: a re-dispatched request may already have run on
the worker that dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from remote_promises.core.errors import CallerClosedError, ConnectionClosedError
from remote_promises.core.logging import get_logger
from remote_promises.core.messages import Message, MessageKind
from remote_promises.core.stash import CorrelationStash, PendingRequest
from remote_promises.dispatch.caller import ReconnectHook, new_pending, run_reconnect_hook, settle
from remote_promises.transports import Connection, Listener

__all__ = ["PooledCaller", "Worker", "select_least_loaded"]

logger = get_logger(__name__)


@dataclass(eq=False)
class Worker:
    """One connected runner and the request ids dispatched to it."""

    connection: Connection
    in_flight_ids: set[str] = field(default_factory=set)

    @property
    def worker_id(self) -> str:
        return self.connection.connection_id

    @property
    def in_flight_count(self) -> int:
        return len(self.in_flight_ids)


def select_least_loaded(workers: Iterable[Worker]) -> Worker | None:
    """Return the worker with the strictly smallest in-flight count.

    Ties keep the first worker encountered.  ``None`` when there are none.
    """
    best: Worker | None = None
    for worker in workers:
        if best is None or worker.in_flight_count < best.in_flight_count:
            best = worker
    return best


class PooledCaller:
    """Caller that listens for runner connections and load-balances across them."""

    def __init__(self, listener: Listener) -> None:
        self._listener = listener
        self._stash: CorrelationStash[PendingRequest] = CorrelationStash()
        self._pending: dict[str, None] = {}
        self._workers: dict[str, Worker] = {}
        self._reconnect_hook: ReconnectHook | None = None
        self._closed = False
        listener.on_connection(self._on_connection)

    # ── Introspection ────────────────────────────────────────────────

    @property
    def listener(self) -> Listener:
        return self._listener

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers.values())

    @property
    def pending_ids(self) -> list[str]:
        """Ids waiting for a worker, in dispatch order."""
        return list(self._pending)

    @property
    def outstanding_count(self) -> int:
        """Requests not yet settled (waiting or in flight)."""
        return len(self._stash)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> PooledCaller:
        await self._listener.start()
        return self

    def on_reconnect(self, hook: ReconnectHook | None) -> PooledCaller:
        """Register the hook awaited on a worker disconnect before re-dispatch."""
        self._reconnect_hook = hook
        return self

    async def close(self) -> None:
        """Stop accepting runners and reject whatever is still outstanding."""
        if self._closed:
            return
        self._closed = True
        await self._listener.close()
        self._workers.clear()
        self._pending.clear()
        for request in self._stash.clear():
            request.reject(CallerClosedError(request.id))

    # ── Calls ────────────────────────────────────────────────────────

    def call(self, *args: Any) -> asyncio.Future[Any]:
        """Queue ``args`` for the least-loaded worker and return a future for the result.

        Raises:
            ConnectionClosedError: If the caller has been closed.
        """
        if self._closed:
            raise ConnectionClosedError("caller is closed").with_context(address=self._listener.address)
        request, future = new_pending(self._stash, args)
        future.add_done_callback(lambda f, request_id=request.id: self._forget_cancelled(request_id, f))
        self._pending[request.id] = None
        self._dispatch()
        return future

    def _dispatch(self) -> None:
        if not self._pending or not self._workers:
            return
        for request_id in list(self._pending):
            worker = select_least_loaded(w for w in self._workers.values() if w.connection.connected)
            if worker is None:
                return
            del self._pending[request_id]
            request = self._stash.get(request_id)
            if request is None:
                continue
            worker.in_flight_ids.add(request_id)
            worker.connection.send(Message.do(request_id, request.args))
            logger.debug(
                "pool.dispatched",
                request_id=request_id,
                worker=worker.worker_id,
                in_flight=worker.in_flight_count,
            )

    # ── Connection events ────────────────────────────────────────────

    def _on_connection(self, connection: Connection) -> None:
        worker = Worker(connection)
        self._workers[worker.worker_id] = worker
        connection.on_message(self._on_message)
        connection.on_disconnect(self._on_disconnect)
        logger.info("pool.worker_joined", worker=worker.worker_id, workers=len(self._workers))
        self._dispatch()

    async def _on_message(self, connection: Connection, message: Message) -> None:
        match message.kind:
            case MessageKind.RESOLVE | MessageKind.REJECT:
                self._settle(connection, message)
            case _:
                logger.debug(
                    "pool.ignored_message",
                    kind=message.kind.value,
                    request_id=message.id,
                    worker=connection.connection_id,
                )

    def _settle(self, connection: Connection, message: Message) -> None:
        worker = self._workers.get(connection.connection_id)
        if worker is not None:
            worker.in_flight_ids.discard(message.id)
        request = self._stash.remove(message.id)
        if request is None:
            logger.debug("pool.unknown_settlement", request_id=message.id, worker=connection.connection_id)
            return
        self._drop_everywhere(message.id)
        settle(request, message)

    async def _on_disconnect(self, connection: Connection) -> None:
        await run_reconnect_hook(self._reconnect_hook, "pool")
        worker = self._workers.pop(connection.connection_id, None)
        if worker is None or self._closed:
            return
        requeued = [request_id for request_id in worker.in_flight_ids if request_id in self._stash]
        worker.in_flight_ids.clear()
        for request_id in requeued:
            self._pending[request_id] = None
        logger.info(
            "pool.worker_left",
            worker=worker.worker_id,
            requeued=len(requeued),
            workers=len(self._workers),
        )
        self._dispatch()

    def _forget_cancelled(self, request_id: str, future: asyncio.Future[Any]) -> None:
        if future.cancelled() and self._stash.remove(request_id) is not None:
            self._drop_everywhere(request_id)

    def _drop_everywhere(self, request_id: str) -> None:
        self._pending.pop(request_id, None)
        for worker in self._workers.values():
            worker.in_flight_ids.discard(request_id)
