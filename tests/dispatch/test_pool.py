"""Tests for PooledCaller — least-loaded dispatch, re-queue on worker loss."""

import asyncio
import math
from unittest.mock import AsyncMock

import pytest

from remote_promises.core.errors import CallerClosedError, ConnectionClosedError, RemoteCallError
from remote_promises.core.messages import Message, MessageKind
from remote_promises.dispatch.pool import PooledCaller, Worker, select_least_loaded
from remote_promises.dispatch.runner import RunnerClient


def _worker(make_connection, name, load):
    return Worker(make_connection(name), {f"{name}-{i}" for i in range(load)})


def _dos(connection):
    return [m for m in connection.sent if m.kind is MessageKind.DO]


# ------------------------------------------------------------------ #
# Selection
# ------------------------------------------------------------------ #


class TestSelectLeastLoaded:
    def test_empty(self):
        assert select_least_loaded([]) is None

    def test_smallest_count(self, make_connection):
        workers = [_worker(make_connection, "a", 2), _worker(make_connection, "b", 0), _worker(make_connection, "c", 1)]
        assert select_least_loaded(workers).worker_id == "b"

    def test_tie_goes_to_first(self, make_connection):
        workers = [_worker(make_connection, "a", 1), _worker(make_connection, "b", 1)]
        assert select_least_loaded(workers).worker_id == "a"

    def test_in_flight_count(self, make_connection):
        assert _worker(make_connection, "a", 3).in_flight_count == 3


# ------------------------------------------------------------------ #
# Dispatch with scripted workers
# ------------------------------------------------------------------ #


class TestPooledDispatch:
    @pytest.fixture
    def pool(self, network):
        return PooledCaller(network.listen("pool"))

    @pytest.mark.asyncio
    async def test_no_workers_stays_pending(self, pool):
        future = pool.call(1)
        assert len(pool.pending_ids) == 1
        assert pool.outstanding_count == 1
        assert not future.done()

    @pytest.mark.asyncio
    async def test_worker_joining_drains_pool_in_order(self, pool, make_connection):
        for i in range(3):
            pool.call(i)
        conn = make_connection("w1")
        pool._on_connection(conn)

        assert pool.pending_ids == []
        assert [m.args for m in _dos(conn)] == [(0,), (1,), (2,)]
        assert pool.workers[0].in_flight_count == 3

    @pytest.mark.asyncio
    async def test_alternates_across_equal_workers(self, pool, make_connection):
        a, b = make_connection("a"), make_connection("b")
        pool._on_connection(a)
        pool._on_connection(b)
        for i in range(6):
            pool.call(i)

        assert [m.args[0] for m in _dos(a)] == [0, 2, 4]
        assert [m.args[0] for m in _dos(b)] == [1, 3, 5]

    @pytest.mark.asyncio
    async def test_balance_bound(self, pool, make_connection):
        conns = [make_connection(f"w{i}") for i in range(3)]
        for conn in conns:
            pool._on_connection(conn)
        for i in range(7):
            pool.call(i)

        counts = [w.in_flight_count for w in pool.workers]
        assert sum(counts) == 7
        assert max(counts) <= math.ceil(7 / 3)

    @pytest.mark.asyncio
    async def test_disconnected_worker_skipped(self, pool, make_connection):
        dead, live = make_connection("dead"), make_connection("live")
        pool._on_connection(dead)
        pool._on_connection(live)
        dead.is_connected = False

        pool.call("x")
        assert _dos(dead) == []
        assert len(_dos(live)) == 1

    @pytest.mark.asyncio
    async def test_settlement_frees_worker(self, pool, make_connection):
        conn = make_connection("w1")
        pool._on_connection(conn)
        future = pool.call(5)
        request_id = _dos(conn)[0].id

        await pool._on_message(conn, Message.resolve(request_id, 25))
        assert await future == 25
        assert pool.workers[0].in_flight_count == 0
        assert pool.outstanding_count == 0

    @pytest.mark.asyncio
    async def test_rejection(self, pool, make_connection):
        conn = make_connection("w1")
        pool._on_connection(conn)
        future = pool.call()
        await pool._on_message(conn, Message.reject(_dos(conn)[0].id, "error"))

        with pytest.raises(RemoteCallError) as exc_info:
            await future
        assert exc_info.value.payload == "error"

    @pytest.mark.asyncio
    async def test_unknown_and_duplicate_settlements_ignored(self, pool, make_connection):
        conn = make_connection("w1")
        pool._on_connection(conn)
        future = pool.call()
        request_id = _dos(conn)[0].id

        await pool._on_message(conn, Message.resolve("stranger", 0))
        await pool._on_message(conn, Message.resolve(request_id, "first"))
        await pool._on_message(conn, Message.resolve(request_id, "second"))
        assert await future == "first"

    @pytest.mark.asyncio
    async def test_settlement_from_other_worker_counts(self, pool, make_connection):
        a, b = make_connection("a"), make_connection("b")
        pool._on_connection(a)
        future = pool.call()
        request_id = _dos(a)[0].id
        pool._on_connection(b)

        await pool._on_message(b, Message.resolve(request_id, "late"))
        assert await future == "late"
        assert all(w.in_flight_count == 0 for w in pool.workers)

    @pytest.mark.asyncio
    async def test_disconnect_requeues_to_survivor(self, pool, make_connection):
        a, b = make_connection("a"), make_connection("b")
        pool._on_connection(a)
        pool._on_connection(b)
        pool.call("x")
        pool.call("y")
        assert len(_dos(a)) == 1
        assert len(_dos(b)) == 1

        a.is_connected = False
        await pool._on_disconnect(a)

        assert [w.worker_id for w in pool.workers] == ["b"]
        assert sorted(m.args[0] for m in _dos(b)) == ["x", "y"]
        assert pool.workers[0].in_flight_count == 2

    @pytest.mark.asyncio
    async def test_disconnect_without_survivor_waits(self, pool, make_connection):
        a = make_connection("a")
        pool._on_connection(a)
        future = pool.call("x")
        request_id = _dos(a)[0].id

        await pool._on_disconnect(a)
        assert pool.pending_ids == [request_id]
        assert not future.done()

        b = make_connection("b")
        pool._on_connection(b)
        assert [m.id for m in _dos(b)] == [request_id]

    @pytest.mark.asyncio
    async def test_hook_awaited_on_worker_loss(self, pool, make_connection):
        hook = AsyncMock()
        pool.on_reconnect(hook)
        a = make_connection("a")
        pool._on_connection(a)

        await pool._on_disconnect(a)
        hook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_request_dropped(self, pool, make_connection):
        future = pool.call()
        future.cancel()
        await asyncio.sleep(0)
        assert pool.pending_ids == []
        assert pool.outstanding_count == 0

        conn = make_connection("w1")
        pool._on_connection(conn)
        assert _dos(conn) == []

    @pytest.mark.asyncio
    async def test_close_rejects_outstanding(self, pool, make_connection):
        queued = pool.call()
        conn = make_connection("w1")
        pool._on_connection(conn)
        pool._on_connection(make_connection("w2"))
        waiting = pool.call()

        await pool.close()
        for future in (queued, waiting):
            with pytest.raises(CallerClosedError):
                await future
        with pytest.raises(ConnectionClosedError):
            pool.call()


# ------------------------------------------------------------------ #
# Dispatch with real runners over the memory transport
# ------------------------------------------------------------------ #


class TestPooledRunners:
    @pytest.mark.asyncio
    async def test_alternating_then_rotating_with_third_runner(self, network, eventually):
        pool = await PooledCaller(network.listen("pool")).start()

        async def work(n):
            await asyncio.sleep(0.02)
            return f"success {n}"

        def runner(n):
            return RunnerClient(lambda: work(n), network.connect("pool", reconnect_delay=0.01))

        r1 = await runner(1).start()
        await eventually(lambda: len(pool.workers) == 1)
        r2 = await runner(2).start()
        await eventually(lambda: len(pool.workers) == 2)

        values = await asyncio.gather(*(pool.call() for _ in range(6)))
        assert values == ["success 1", "success 2"] * 3

        r3 = await runner(3).start()
        await eventually(lambda: len(pool.workers) == 3)

        values = await asyncio.gather(*(pool.call() for _ in range(6)))
        assert values == ["success 1", "success 2", "success 3"] * 2

        for r in (r1, r2, r3):
            await r.close()
        await pool.close()

    @pytest.mark.asyncio
    async def test_runner_replaced_mid_request(self, network, eventually):
        pool = await PooledCaller(network.listen("pool")).start()

        async def work(n):
            await asyncio.sleep(0.05)
            return f"success {n}"

        r1 = await RunnerClient(lambda: work(1), network.connect("pool", reconnect_delay=0.01)).start()
        assert await pool.call() == "success 1"

        future = pool.call()
        await eventually(lambda: r1.runner.executing_count == 1)
        await r1.close()

        await eventually(lambda: len(pool.pending_ids) == 1)
        assert not future.done()

        r2 = await RunnerClient(lambda: work(2), network.connect("pool", reconnect_delay=0.01)).start()
        assert await asyncio.wait_for(future, timeout=2) == "success 2"

        await r2.close()
        await pool.close()
