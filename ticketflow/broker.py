"""
Redis-backed work queue for ticket analysis.

Producers LPUSH serialized UnifiedTickets; consumers BRPOP from the other end,
so the list drains FIFO. Delivery is at-least-once: a ticket is seen again only
if a handler requeues it. Blocking pops occupy their connection, so every
consumer loop gets its own via connect().
"""

import logging
from typing import Callable, Iterable, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError

from ticketflow.config import DEQUEUE_TIMEOUT_SECONDS, QUEUE_KEY, REDIS_URL
from ticketflow.models import UnifiedTicket

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], aioredis.Redis]


def redis_factory(url: str = REDIS_URL) -> ConnectionFactory:
    """Connection factory for a real Redis server."""

    def _connect() -> aioredis.Redis:
        return aioredis.from_url(url, decode_responses=True)

    return _connect


class WorkQueue:
    """Single named FIFO queue of UnifiedTicket payloads."""

    def __init__(self, connect: ConnectionFactory, key: str = QUEUE_KEY):
        self._connect = connect
        self.key = key
        # Shared publisher connection for non-blocking commands only
        self._publisher: Optional[aioredis.Redis] = None

    @property
    def publisher(self) -> aioredis.Redis:
        if self._publisher is None:
            self._publisher = self._connect()
        return self._publisher

    def connect(self) -> aioredis.Redis:
        """Dedicated connection for one consumer loop's blocking pops."""
        return self._connect()

    async def enqueue(self, ticket: UnifiedTicket) -> None:
        await self.publisher.lpush(self.key, ticket.model_dump_json())

    async def enqueue_batch(self, tickets: Iterable[UnifiedTicket]) -> int:
        """Push all tickets in one pipelined round trip. Returns how many were pushed."""
        payloads = [t.model_dump_json() for t in tickets]
        if not payloads:
            return 0
        async with self.publisher.pipeline(transaction=True) as pipe:
            for payload in payloads:
                pipe.lpush(self.key, payload)
            await pipe.execute()
        return len(payloads)

    async def requeue(self, ticket: UnifiedTicket) -> None:
        """Push a ticket back to the tail (it will be popped after everything already queued)."""
        await self.enqueue(ticket)

    async def dequeue_blocking(
        self,
        conn: aioredis.Redis,
        timeout: int = DEQUEUE_TIMEOUT_SECONDS,
    ) -> Optional[UnifiedTicket]:
        """
        Pop the oldest ticket, waiting at most `timeout` seconds. Returns None on
        timeout. A payload that does not decode is logged and dropped (also None).
        """
        try:
            result = await conn.brpop([self.key], timeout=timeout)
        except UnicodeDecodeError as e:
            # BRPOP already removed the element; only the reply failed to decode
            logger.error("Dropping queue payload that is not valid UTF-8: %s", e)
            return None
        if not result:
            return None
        _key, payload = result
        try:
            return UnifiedTicket.model_validate_json(payload)
        except ValidationError as e:
            logger.error("Dropping undecodable queue payload (%d bytes): %s", len(payload), e)
            return None

    async def length(self) -> int:
        """Number of tickets waiting."""
        return await self.publisher.llen(self.key)

    async def clear(self) -> None:
        """Clear the queue (e.g. for tests)."""
        await self.publisher.delete(self.key)

    async def close(self) -> None:
        if self._publisher is not None:
            await self._publisher.aclose()
            self._publisher = None
