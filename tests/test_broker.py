"""
Tests for the Redis work queue (fakeredis, no server required).
Run: pytest tests/test_broker.py -v
"""

from ticketflow.models import TicketChannel, UnifiedTicket


def _ticket(ext: str) -> UnifiedTicket:
    return UnifiedTicket(text=f"body {ext}", source=TicketChannel.IMPORT, tenant_id=1, external_id=ext)


class TestWorkQueue:
    async def test_enqueue_dequeue_fifo(self, queue):
        for ext in ("a", "b", "c"):
            await queue.enqueue(_ticket(ext))
        assert await queue.length() == 3
        conn = queue.connect()
        out = [(await queue.dequeue_blocking(conn, timeout=1)).external_id for _ in range(3)]
        assert out == ["a", "b", "c"]
        assert await queue.length() == 0

    async def test_batch_is_one_push_in_order(self, queue):
        pushed = await queue.enqueue_batch([_ticket("x"), _ticket("y")])
        assert pushed == 2
        conn = queue.connect()
        assert (await queue.dequeue_blocking(conn, 1)).external_id == "x"
        assert (await queue.dequeue_blocking(conn, 1)).external_id == "y"

    async def test_empty_batch_is_noop(self, queue):
        assert await queue.enqueue_batch([]) == 0
        assert await queue.length() == 0

    async def test_dequeue_times_out_when_empty(self, queue):
        assert await queue.dequeue_blocking(queue.connect(), timeout=1) is None

    async def test_payload_round_trips_meta_and_images(self, queue):
        ticket = UnifiedTicket.model_validate(
            {
                "text": "see screenshot",
                "source": "chat",
                "tenant_id": 3,
                "images": [{"type": "base64", "data": "AAAA", "mimeType": "image/png"}],
                "meta": {"sessionId": "s-1", "__retried": True},
            }
        )
        await queue.enqueue(ticket)
        out = await queue.dequeue_blocking(queue.connect(), 1)
        assert out == ticket
        assert out.retried is True

    async def test_undecodable_payload_is_dropped(self, queue, redis_client):
        await redis_client.lpush(queue.key, "{not json")
        await queue.enqueue(_ticket("ok"))
        conn = queue.connect()
        assert await queue.dequeue_blocking(conn, 1) is None
        assert (await queue.dequeue_blocking(conn, 1)).external_id == "ok"

    async def test_non_utf8_payload_is_dropped(self, queue, redis_client):
        await redis_client.lpush(queue.key, b"\xff\xfe not utf8")
        await queue.enqueue(_ticket("ok"))
        assert await queue.dequeue_blocking(queue.connect(), 1) is None
        assert (await queue.dequeue_blocking(queue.connect(), 1)).external_id == "ok"
        assert await queue.length() == 0

    async def test_clear(self, queue):
        await queue.enqueue(_ticket("a"))
        await queue.clear()
        assert await queue.length() == 0
