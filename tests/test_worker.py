"""
Tests for the worker pool: retry-once, drop after second failure, loop survival,
single start, cooperative stop.
Run: pytest tests/test_worker.py -v
"""

import asyncio

import redis.exceptions

from ticketflow.broker import WorkQueue
from ticketflow.models import TicketChannel, UnifiedTicket
from ticketflow.worker import WorkerPool


def _ticket(ext: str) -> UnifiedTicket:
    return UnifiedTicket(text="t", source=TicketChannel.VOICE, tenant_id=1, external_id=ext)


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


async def _shutdown(pool: WorkerPool) -> None:
    pool.stop()
    await asyncio.wait_for(pool.join(), timeout=5)


class TestRetryOnce:
    async def test_fails_once_then_succeeds(self, queue):
        calls: list[bool] = []

        async def handler(ticket):
            calls.append(ticket.retried)
            if len(calls) == 1:
                raise RuntimeError("boom")

        pool = WorkerPool(queue, dequeue_timeout=1)
        await queue.enqueue(_ticket("r-1"))
        pool.start(1, handler)
        await _wait_for(lambda: len(calls) == 2)
        await _shutdown(pool)

        assert calls == [False, True]
        assert await queue.length() == 0

    async def test_fails_twice_then_dropped(self, queue):
        calls: list[str] = []

        async def handler(ticket):
            calls.append(ticket.external_id)
            raise RuntimeError("still broken")

        pool = WorkerPool(queue, dequeue_timeout=1)
        await queue.enqueue(_ticket("r-2"))
        pool.start(2, handler)
        await _wait_for(lambda: len(calls) == 2)
        await asyncio.sleep(0.2)
        await _shutdown(pool)

        assert calls == ["r-2", "r-2"]
        assert await queue.length() == 0

    async def test_loop_survives_handler_errors(self, queue):
        seen: list[str] = []

        async def handler(ticket):
            seen.append(ticket.external_id)
            if ticket.external_id == "bad":
                raise ValueError("bad ticket")

        pool = WorkerPool(queue, dequeue_timeout=1)
        await queue.enqueue_batch([_ticket("bad"), _ticket("good")])
        pool.start(1, handler)
        await _wait_for(lambda: seen.count("good") == 1 and seen.count("bad") == 2)
        await _shutdown(pool)

    async def test_loop_survives_non_utf8_payload(self, queue, redis_client):
        seen: list[str] = []

        async def handler(ticket):
            seen.append(ticket.external_id)

        pool = WorkerPool(queue, dequeue_timeout=1, reconnect_delay=0.01)
        await redis_client.lpush(queue.key, b"\xff\xfe not utf8")
        pool.start(1, handler)
        await queue.enqueue(_ticket("after"))
        await _wait_for(lambda: seen == ["after"])
        assert all(not t.done() for t in pool._tasks)
        await _shutdown(pool)


class FlakyQueue(WorkQueue):
    """Raises `error` on the first pop."""

    def __init__(self, *args, error=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.error = error or redis.exceptions.ConnectionError("connection reset")
        self.failures = 1
        self.connections = 0

    def connect(self):
        self.connections += 1
        return super().connect()

    async def dequeue_blocking(self, conn, timeout=1):
        if self.failures:
            self.failures -= 1
            raise self.error
        return await super().dequeue_blocking(conn, timeout)


class TestPoolLifecycle:
    async def test_transport_error_reconnects_same_loop(self, connect):
        queue = FlakyQueue(connect, key="queue:flaky")
        handled: list[str] = []

        async def handler(ticket):
            handled.append(ticket.external_id)

        pool = WorkerPool(queue, dequeue_timeout=1, reconnect_delay=0.01)
        await queue.enqueue(_ticket("after-reconnect"))
        pool.start(1, handler)
        await _wait_for(lambda: handled == ["after-reconnect"])
        await _shutdown(pool)
        assert queue.connections == 2

    async def test_unexpected_dequeue_error_keeps_loop_alive(self, connect):
        queue = FlakyQueue(connect, key="queue:flaky", error=RuntimeError("parser state"))
        handled: list[str] = []

        async def handler(ticket):
            handled.append(ticket.external_id)

        pool = WorkerPool(queue, dequeue_timeout=1, reconnect_delay=0.01)
        await queue.enqueue(_ticket("after-error"))
        pool.start(1, handler)
        await _wait_for(lambda: handled == ["after-error"])
        await _shutdown(pool)
        assert queue.connections == 2

    async def test_start_twice_is_noop(self, queue):
        async def handler(ticket):
            pass

        pool = WorkerPool(queue, dequeue_timeout=1)
        pool.start(3, handler)
        tasks = list(pool._tasks)
        pool.start(5, handler)
        assert pool._tasks == tasks
        assert len(tasks) == 3
        await _shutdown(pool)
        assert not pool.running

    async def test_concurrency_drains_queue(self, queue):
        done: list[str] = []

        async def handler(ticket):
            await asyncio.sleep(0.05)
            done.append(ticket.external_id)

        pool = WorkerPool(queue, dequeue_timeout=1)
        await queue.enqueue_batch([_ticket(f"t{i}") for i in range(12)])
        pool.start(4, handler)
        await _wait_for(lambda: len(done) == 12)
        await _shutdown(pool)
        assert sorted(done) == sorted(f"t{i}" for i in range(12))

    async def test_stop_lets_in_flight_handler_finish(self, queue):
        started = asyncio.Event()
        finished: list[str] = []

        async def handler(ticket):
            started.set()
            await asyncio.sleep(0.2)
            finished.append(ticket.external_id)

        pool = WorkerPool(queue, dequeue_timeout=1)
        await queue.enqueue(_ticket("slow"))
        pool.start(1, handler)
        await asyncio.wait_for(started.wait(), timeout=5)
        await _shutdown(pool)
        assert finished == ["slow"]
