"""
Tenant-scoped storage for tickets, classifications, assignments, agents and offices.
Backed by Redis:

  ticket:{id}                        TicketRecord JSON
  tickets:{tenant}                   set of ticket ids
  ticket_ext:{tenant}:{external_id}  ticket id (SET NX: one row per external id)
  classification:{id}                StoredClassification JSON
  ticket_classification:{ticket_id}  classification id (SET NX: written once)
  assignment:{ticket_id}             Assignment JSON (replaced on re-assignment)
  agent:{tenant}:{agent_id}          Agent JSON, load excluded
  agent_load:{tenant}:{agent_id}     integer counter, INCR only
  agents:{tenant}                    set of agent ids
  offices:{tenant}                   list of Office JSON, insertion order
  rr:office:{office}                 round-robin turn counter
"""

import logging
from typing import Optional

import redis.asyncio as aioredis

from ticketflow.config import NEW_STATUS
from ticketflow.exceptions import StorageError
from ticketflow.models import (
    Agent,
    Assignment,
    ClassificationResult,
    Office,
    StoredClassification,
    TicketRecord,
    UnifiedTicket,
)

logger = logging.getLogger(__name__)

TICKET_SEQ = "seq:ticket"
CLASSIFICATION_SEQ = "seq:classification"


def _ticket_key(ticket_id: int) -> str:
    return f"ticket:{ticket_id}"


def _ext_key(tenant_id: int, external_id: str) -> str:
    return f"ticket_ext:{tenant_id}:{external_id}"


def _agent_key(tenant_id: int, agent_id: str) -> str:
    return f"agent:{tenant_id}:{agent_id}"


def _load_key(tenant_id: int, agent_id: str) -> str:
    return f"agent_load:{tenant_id}:{agent_id}"


class Storage:
    def __init__(self, client: aioredis.Redis):
        self.r = client

    # --- Tickets ---

    async def get_ticket(self, ticket_id: int) -> Optional[TicketRecord]:
        raw = await self.r.get(_ticket_key(ticket_id))
        if not raw:
            return None
        return TicketRecord.model_validate_json(raw)

    async def find_ticket(self, external_id: str, tenant_id: int) -> Optional[TicketRecord]:
        """Look up a ticket by (external id, tenant)."""
        ticket_id = await self.r.get(_ext_key(tenant_id, external_id))
        if ticket_id is None:
            return None
        return await self.get_ticket(int(ticket_id))

    async def create_ticket(self, ticket: UnifiedTicket, external_id: str) -> TicketRecord:
        """
        Insert a ticket row. If another worker created the same (external id, tenant)
        concurrently, the existing row is returned instead of a duplicate.
        """
        ticket_id = await self.r.incr(TICKET_SEQ)
        record = TicketRecord(
            ticket_id=ticket_id,
            tenant_id=ticket.tenant_id,
            external_id=external_id,
            text=ticket.text,
            source=ticket.source,
            segment=ticket.segment,
            language=ticket.language,
            gender=ticket.gender,
            birth_date=ticket.birth_date,
            country=ticket.country,
            city=ticket.city,
            street=ticket.street,
            house=ticket.house,
            contact=ticket.contact,
            status=ticket.status or NEW_STATUS,
        )
        # Row first, then claim the external id, so the index never points at nothing.
        await self.r.set(_ticket_key(ticket_id), record.model_dump_json())
        claimed = await self.r.set(_ext_key(ticket.tenant_id, external_id), ticket_id, nx=True)
        if not claimed:
            await self.r.delete(_ticket_key(ticket_id))
            existing = await self.find_ticket(external_id, ticket.tenant_id)
            if existing is None:
                raise StorageError(f"Ticket index for {external_id!r} points at a missing row")
            logger.info("Ticket %r already stored as #%d.", external_id, existing.ticket_id)
            return existing
        await self.r.sadd(f"tickets:{ticket.tenant_id}", ticket_id)
        return record

    async def set_ticket_coordinates(self, ticket_id: int, lat: float, lon: float) -> None:
        record = await self.get_ticket(ticket_id)
        if record is None:
            raise StorageError(f"Ticket #{ticket_id} not found")
        record.latitude, record.longitude = lat, lon
        await self.r.set(_ticket_key(ticket_id), record.model_dump_json())

    async def list_unanalyzed_tickets(self, tenant_id: int) -> list[TicketRecord]:
        """Tickets of the tenant with no classification yet, oldest first."""
        out = []
        ids = sorted(int(i) for i in await self.r.smembers(f"tickets:{tenant_id}"))
        for ticket_id in ids:
            if await self.r.exists(f"ticket_classification:{ticket_id}"):
                continue
            record = await self.get_ticket(ticket_id)
            if record:
                out.append(record)
        return out

    # --- Classifications ---

    async def get_classification(self, classification_id: int) -> Optional[StoredClassification]:
        raw = await self.r.get(f"classification:{classification_id}")
        if not raw:
            return None
        return StoredClassification.model_validate_json(raw)

    async def get_classification_for_ticket(self, ticket_id: int) -> Optional[StoredClassification]:
        classification_id = await self.r.get(f"ticket_classification:{ticket_id}")
        if classification_id is None:
            return None
        return await self.get_classification(int(classification_id))

    async def create_classification(
        self, ticket_id: int, result: ClassificationResult
    ) -> tuple[StoredClassification, bool]:
        """Write the ticket's classification. Returns (row, created); a second write returns the first row."""
        classification_id = await self.r.incr(CLASSIFICATION_SEQ)
        row = StoredClassification(
            classification_id=classification_id,
            ticket_id=ticket_id,
            **result.model_dump(),
        )
        await self.r.set(f"classification:{classification_id}", row.model_dump_json())
        claimed = await self.r.set(f"ticket_classification:{ticket_id}", classification_id, nx=True)
        if not claimed:
            await self.r.delete(f"classification:{classification_id}")
            existing = await self.get_classification_for_ticket(ticket_id)
            if existing is None:
                raise StorageError(f"Classification index for ticket #{ticket_id} points at a missing row")
            logger.warning("Ticket #%d already classified (#%d); keeping it.", ticket_id, existing.classification_id)
            return existing, False
        return row, True

    # --- Assignments ---

    async def save_assignment(self, assignment: Assignment) -> None:
        """Create or replace the ticket's assignment."""
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.set(f"assignment:{assignment.ticket_id}", assignment.model_dump_json())
            pipe.sadd(f"assignments:{assignment.tenant_id}", assignment.ticket_id)
            await pipe.execute()

    async def get_assignment(self, ticket_id: int) -> Optional[Assignment]:
        raw = await self.r.get(f"assignment:{ticket_id}")
        if not raw:
            return None
        return Assignment.model_validate_json(raw)

    async def list_assignments(self, tenant_id: int) -> list[Assignment]:
        out = []
        for ticket_id in sorted(int(i) for i in await self.r.smembers(f"assignments:{tenant_id}")):
            a = await self.get_assignment(ticket_id)
            if a:
                out.append(a)
        return out

    # --- Agents ---

    async def register_agent(self, agent: Agent) -> None:
        """Upsert an agent. The load counter is only initialised, never overwritten."""
        payload = agent.model_dump_json(exclude={"current_load"})
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.set(_agent_key(agent.tenant_id, agent.agent_id), payload)
            pipe.sadd(f"agents:{agent.tenant_id}", agent.agent_id)
            pipe.set(_load_key(agent.tenant_id, agent.agent_id), agent.current_load, nx=True)
            await pipe.execute()
        logger.info("Agent %s (%s) registered in office %s.", agent.agent_id, agent.name, agent.office)

    async def get_agent(self, tenant_id: int, agent_id: str) -> Optional[Agent]:
        raw = await self.r.get(_agent_key(tenant_id, agent_id))
        if not raw:
            return None
        agent = Agent.model_validate_json(raw)
        agent.current_load = await self.get_agent_load(tenant_id, agent_id)
        return agent

    async def list_agents(self, tenant_id: int) -> list[Agent]:
        """All agents of the tenant with their current load, ordered by agent id."""
        agents = []
        for agent_id in sorted(await self.r.smembers(f"agents:{tenant_id}")):
            a = await self.get_agent(tenant_id, agent_id)
            if a:
                agents.append(a)
        return agents

    async def find_agent_by_name(self, tenant_id: int, name: str) -> Optional[Agent]:
        for agent in await self.list_agents(tenant_id):
            if agent.name == name:
                return agent
        return None

    async def get_agent_load(self, tenant_id: int, agent_id: str) -> int:
        raw = await self.r.get(_load_key(tenant_id, agent_id))
        return max(0, int(raw or 0))

    async def increment_agent_load(self, tenant_id: int, agent_id: str, amount: int = 1) -> int:
        """Atomic increment; returns the load after incrementing."""
        return await self.r.incrby(_load_key(tenant_id, agent_id), amount)

    # --- Offices ---

    async def add_office(self, tenant_id: int, office: Office) -> None:
        await self.r.rpush(f"offices:{tenant_id}", office.model_dump_json())

    async def list_offices(self, tenant_id: int) -> list[Office]:
        raw = await self.r.lrange(f"offices:{tenant_id}", 0, -1)
        return [Office.model_validate_json(o) for o in raw]

    # --- Round robin ---

    async def next_round_robin_turn(self, office: str) -> int:
        """Zero-based turn for the office; each call advances it by one."""
        return await self.r.incr(f"rr:office:{office}") - 1
