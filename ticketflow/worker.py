"""
Worker pool: N asyncio consumer loops draining the work queue.

Each loop owns its Redis connection (BRPOP blocks it). A handler failure
requeues the ticket once with the retry flag set; a second failure drops it
with a logged error. Shutdown is cooperative: stop() lets in-flight handlers
finish and prevents the next pop.

Run standalone:  python -m ticketflow.worker
"""

import asyncio
import logging
import signal
from typing import Awaitable, Callable, Optional

import redis.exceptions

from ticketflow.broker import WorkQueue
from ticketflow.config import DEQUEUE_TIMEOUT_SECONDS, RECONNECT_DELAY_SECONDS, REDIS_URL, WORKER_CONCURRENCY
from ticketflow.models import RETRY_FLAG, UnifiedTicket

logger = logging.getLogger(__name__)

Handler = Callable[[UnifiedTicket], Awaitable[None]]


class WorkerPool:
    """Fixed-size pool of consumer loops. One per process; start() twice is a no-op."""

    def __init__(
        self,
        queue: WorkQueue,
        dequeue_timeout: int = DEQUEUE_TIMEOUT_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
    ):
        self.queue = queue
        self.dequeue_timeout = dequeue_timeout
        self.reconnect_delay = reconnect_delay
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    def start(self, concurrency: int, handler: Handler) -> None:
        if self._running:
            logger.warning("Workers already running, skipping duplicate start.")
            return
        self._running = True
        logger.info("Starting %d analysis workers on %r.", concurrency, self.queue.key)
        self._tasks = [
            asyncio.create_task(self._consume(i, handler), name=f"worker-{i}")
            for i in range(concurrency)
        ]

    def stop(self) -> None:
        """Signal all loops to exit after their current blocking wait."""
        self._running = False

    async def join(self) -> None:
        """Wait until every loop has exited."""
        if self._tasks:
            await asyncio.gather(*self._tasks)
        self._tasks = []

    async def _consume(self, worker_id: int, handler: Handler) -> None:
        conn = self.queue.connect()
        logger.info("[Worker-%d] Listening...", worker_id)
        try:
            while self._running:
                try:
                    ticket = await self.queue.dequeue_blocking(conn, self.dequeue_timeout)
                except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError) as e:
                    logger.error("[Worker-%d] BRPOP error: %s; reconnecting.", worker_id, e)
                    await asyncio.sleep(self.reconnect_delay)
                    await _close_quietly(conn)
                    conn = self.queue.connect()
                    continue
                except redis.exceptions.RedisError as e:
                    logger.error("[Worker-%d] Queue error: %s", worker_id, e)
                    await asyncio.sleep(self.reconnect_delay)
                    continue
                except Exception:
                    logger.exception("[Worker-%d] Unexpected dequeue error; resetting connection.", worker_id)
                    await asyncio.sleep(self.reconnect_delay)
                    await _close_quietly(conn)
                    conn = self.queue.connect()
                    continue
                if ticket is None:
                    continue
                await self._run_one(worker_id, ticket, handler)
        finally:
            await _close_quietly(conn)
            logger.info("[Worker-%d] Stopped.", worker_id)

    async def _run_one(self, worker_id: int, ticket: UnifiedTicket, handler: Handler) -> None:
        try:
            await handler(ticket)
        except Exception as e:
            logger.error("[Worker-%d] Handler error for ticket %r: %s", worker_id, ticket.label(), e)
            if ticket.retried:
                logger.error(
                    "[Worker-%d] Ticket %r failed after retry; dropping.", worker_id, ticket.label()
                )
                return
            ticket.meta[RETRY_FLAG] = True
            try:
                await self.queue.requeue(ticket)
            except redis.exceptions.RedisError as requeue_error:
                logger.error(
                    "[Worker-%d] Could not requeue ticket %r: %s", worker_id, ticket.label(), requeue_error
                )
                return
            logger.info("[Worker-%d] Re-queued ticket %r for retry.", worker_id, ticket.label())


async def _close_quietly(conn) -> None:
    try:
        await conn.aclose()
    except (redis.exceptions.RedisError, OSError) as e:
        logger.debug("Ignoring error while closing queue connection: %s", e)


async def run(concurrency: int = WORKER_CONCURRENCY, context=None) -> None:
    """Build the pipeline context, start the pool and run until SIGINT/SIGTERM."""
    from ticketflow.context import PipelineContext

    ctx: Optional[PipelineContext] = context or PipelineContext.from_config()
    ctx.pool.start(concurrency, ctx.pipeline.handle)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, ctx.pool.stop)
        except NotImplementedError:
            pass  # Windows
    try:
        await ctx.pool.join()
    finally:
        await ctx.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Worker starting (Redis: %s).", REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL)
    asyncio.run(run())
