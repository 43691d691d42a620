"""Ingestion API: normalize channel payloads and queue them for analysis (202 Accepted)."""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException, Request

from ticketflow.context import PipelineContext
from ticketflow.models import BatchAccepted, TicketAccepted, TicketChannel
from ticketflow.normalizer import normalize, synthesize_external_id
from ticketflow.pipeline import reprocess_unanalyzed

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx = PipelineContext.from_config()
    app.state.context = ctx
    try:
        yield
    finally:
        await ctx.close()


app = FastAPI(
    title="Ticket Intake API",
    description="Channel ingestion into the analysis queue: 202 Accepted, Redis + background workers.",
    version="0.1.0",
    lifespan=lifespan,
)


def _context(request: Request) -> PipelineContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return ctx


def _prepare(channel: TicketChannel, raw: Any, tenant_id: int):
    ticket = normalize(channel, raw, tenant_id)
    if not ticket.external_id:
        ticket.external_id = synthesize_external_id(channel)
    return ticket


# Fixed paths first: /ingest/{channel} would otherwise capture them.


@app.get("/ingest/queue")
async def queue_length(request: Request) -> dict:
    """Tickets waiting for a worker."""
    return {"queue_length": await _context(request).queue.length()}


@app.post("/ingest/reprocess")
async def reprocess(request: Request, x_tenant_id: int = Header(...)) -> dict:
    """Queue every stored ticket of the tenant that has no classification yet."""
    ctx = _context(request)
    count = await reprocess_unanalyzed(ctx.storage, ctx.queue, x_tenant_id)
    return {"count": count}


@app.post("/ingest/{channel}", status_code=202, response_model=TicketAccepted)
async def ingest_ticket(
    channel: TicketChannel,
    request: Request,
    payload: dict[str, Any] = Body(...),
    x_tenant_id: int = Header(...),
) -> TicketAccepted:
    """Normalize one payload and queue it. Analysis happens in the worker pool."""
    ctx = _context(request)
    ticket = _prepare(channel, payload, x_tenant_id)
    await ctx.queue.enqueue(ticket)
    return TicketAccepted(external_id=ticket.external_id)


@app.post("/ingest/{channel}/batch", status_code=202, response_model=BatchAccepted)
async def ingest_batch(
    channel: TicketChannel,
    request: Request,
    payloads: list[dict[str, Any]] = Body(...),
    x_tenant_id: int = Header(...),
) -> BatchAccepted:
    """Normalize many payloads and queue them in one pipelined push; order is preserved."""
    ctx = _context(request)
    tickets = [_prepare(channel, p, x_tenant_id) for p in payloads]
    count = await ctx.queue.enqueue_batch(tickets)
    return BatchAccepted(
        accepted=[TicketAccepted(external_id=t.external_id) for t in tickets],
        message=f"{count} tickets queued for analysis",
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
