"""
Tests for the ingestion API and an end-to-end run through the worker pool
(ASGI transport + fakeredis; no server required).
Run: pytest tests/test_api.py -v
"""

import asyncio

import httpx
import pytest

from conftest import TENANT, completion_body, mock_client, seed_tenant
from ticketflow.context import PipelineContext
from ticketflow.main import app
from ticketflow.models import Agent


def _external_services(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/chat/completions"):
        return httpx.Response(200, json=completion_body())
    return httpx.Response(200, json=[])


@pytest.fixture
async def ctx(connect):
    context = PipelineContext(connect, http=mock_client(_external_services))
    app.state.context = context
    yield context
    del app.state.context
    await context.close()


@pytest.fixture
async def api(ctx):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


HEADERS = {"X-Tenant-Id": str(TENANT)}

VOICE_CALL = {
    "phone": "+77011112233",
    "callId": "c-1",
    "duration": 61,
    "city": "Алматы",
    "transcript": [{"role": "user", "text": "Хочу закрыть счёт"}],
}


class TestIngest:
    async def test_voice_ticket_accepted_with_synthesized_id(self, api, ctx):
        r = await api.post("/ingest/voice", json=VOICE_CALL, headers=HEADERS)
        assert r.status_code == 202
        assert r.json()["external_id"].startswith("voice-")
        assert await ctx.queue.length() == 1

    async def test_import_keeps_guid(self, api, ctx):
        r = await api.post("/ingest/import", json={"guid": "g-42", "description": "x"}, headers=HEADERS)
        assert r.status_code == 202
        assert r.json()["external_id"] == "g-42"

    async def test_batch_preserves_order(self, api, ctx):
        rows = [{"guid": f"b-{i}", "description": "x"} for i in range(3)]
        r = await api.post("/ingest/import/batch", json=rows, headers=HEADERS)
        assert r.status_code == 202
        assert [a["external_id"] for a in r.json()["accepted"]] == ["b-0", "b-1", "b-2"]
        assert (await api.get("/ingest/queue")).json() == {"queue_length": 3}

    async def test_unknown_channel_rejected(self, api):
        r = await api.post("/ingest/fax", json={}, headers=HEADERS)
        assert r.status_code == 422

    async def test_tenant_header_required(self, api):
        r = await api.post("/ingest/chat", json={"messages": []})
        assert r.status_code == 422

    async def test_health(self, api):
        r = await api.get("/health")
        assert r.json() == {"status": "ok"}


class TestEndToEnd:
    async def test_ingested_tickets_are_assigned_once(self, api, ctx):
        await seed_tenant(
            ctx.storage,
            [
                Agent(agent_id="m1", name="Manager", tenant_id=TENANT, office="A", skills=["Жалоба", "RU"]),
                Agent(agent_id="bot", name="Voice Agent Robot", tenant_id=TENANT, office="A"),
            ],
        )
        row = {"guid": "e2e-1", "description": "Жалоба", "country": "Казахстан", "city": "Алматы"}
        # Duplicate delivery of the same ticket
        await api.post("/ingest/import/batch", json=[row, row], headers=HEADERS)
        await api.post("/ingest/voice", json={**VOICE_CALL, "status": "Завершен"}, headers=HEADERS)

        ctx.pool.dequeue_timeout = 1
        ctx.pool.start(2, ctx.pipeline.handle)
        deadline = asyncio.get_running_loop().time() + 5
        while len(await ctx.storage.list_assignments(TENANT)) < 2 or await ctx.queue.length():
            assert asyncio.get_running_loop().time() < deadline, "tickets not processed in time"
            await asyncio.sleep(0.05)
        # Let in-flight handlers settle before checking load
        ctx.pool.stop()
        await asyncio.wait_for(ctx.pool.join(), timeout=5)

        assignments = await ctx.storage.list_assignments(TENANT)
        assert sorted(a.agent_id for a in assignments) == ["bot", "m1"]
        assert await ctx.storage.get_agent_load(TENANT, "m1") == 1
