"""
Assignment engine: choose an agent for an analysed ticket and commit the
assignment plus an atomic load increment.

Scoring (default):
  1. Target office: nearest by haversine when coordinates are known, else the
     office whose name/address contains the ticket city, else DEFAULT_OFFICE,
     else the tenant's first office.
  2. Pool: every tenant agent except the automation agent.
  3. Score: +100 same office, +30 category skill, +30 language skill,
     VIP segment ±50 by VIP skill, -10 per ticket of current load.
  4. Winner: highest score, ties by lowest load.
  5. Commit: write the assignment, then INCR the winner's load.

Round robin (ROUTING_STRATEGY=round_robin): same target office, then alternate
between the two least-loaded agents of that office via a Redis counter.
"""

import logging
from typing import Optional

from ticketflow.config import AUTOMATION_AGENT_NAME, DEFAULT_OFFICE, ROUTING_STRATEGY
from ticketflow.exceptions import RoutingConfigError, StorageError
from ticketflow.models import Agent, Assignment, AssignmentOutcome, AssignmentTrace, Office, TicketRecord
from ticketflow.services.routing_utils import (
    format_terms,
    match_office_by_city,
    nearest_office,
    score_terms,
    select_best,
)
from ticketflow.services.storage import Storage

logger = logging.getLogger(__name__)

STRATEGIES = ("scoring", "round_robin")
ROUND_ROBIN_WIDTH = 2


def resolve_target_office(
    offices: list[Office],
    lat: Optional[float],
    lon: Optional[float],
    city: Optional[str],
    default_office: str = DEFAULT_OFFICE,
) -> tuple[Office, Optional[int], str]:
    """Return (office, rounded distance km or None, how it was chosen)."""
    if not offices:
        raise RoutingConfigError("Tenant has no offices configured")
    if lat is not None and lon is not None:
        found = nearest_office(lat, lon, offices)
        if found:
            office, distance = found
            return office, round(distance), "nearest"
        return offices[0], None, "first"
    by_city = match_office_by_city(city, offices)
    if by_city:
        return by_city, None, "city"
    for office in offices:
        if office.name == default_office:
            return office, None, "default"
    return offices[0], None, "first"


class AssignmentEngine:
    def __init__(
        self,
        storage: Storage,
        strategy: str = ROUTING_STRATEGY,
        automation_agent_name: str = AUTOMATION_AGENT_NAME,
        default_office: str = DEFAULT_OFFICE,
    ):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown routing strategy {strategy!r}; expected one of {STRATEGIES}")
        self.storage = storage
        self.strategy = strategy
        self.automation_agent_name = automation_agent_name
        self.default_office = default_office

    async def _load_ticket(self, ticket_id: int) -> TicketRecord:
        ticket = await self.storage.get_ticket(ticket_id)
        if ticket is None:
            raise StorageError(f"Ticket #{ticket_id} not found")
        return ticket

    async def _candidate_pool(self, tenant_id: int) -> list[Agent]:
        pool = [a for a in await self.storage.list_agents(tenant_id) if a.name != self.automation_agent_name]
        if not pool:
            raise RoutingConfigError(f"No agents found for tenant #{tenant_id}")
        return pool

    async def assign(
        self,
        ticket_id: int,
        classification_id: Optional[int],
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> AssignmentOutcome:
        ticket = await self._load_ticket(ticket_id)
        category = language = ""
        if classification_id is not None:
            classification = await self.storage.get_classification(classification_id)
            if classification:
                category, language = classification.category, classification.language

        offices = await self.storage.list_offices(ticket.tenant_id)
        office, distance_km, how = resolve_target_office(offices, lat, lon, ticket.city, self.default_office)
        pool = await self._candidate_pool(ticket.tenant_id)

        if distance_km is not None:
            office_step = f"1. Target office: {office.name} (nearest, ~{distance_km} km)"
        else:
            office_step = f"1. Target office: {office.name} (by {how})"

        if self.strategy == "round_robin":
            chosen, trace = await self._pick_round_robin(office, pool)
        else:
            chosen, trace = self._pick_by_score(office, pool, category, language, ticket.segment)
        trace.target_office = office.name
        trace.distance_km = distance_km
        trace.steps.insert(0, office_step)

        assignment = Assignment(
            ticket_id=ticket_id,
            classification_id=classification_id,
            tenant_id=ticket.tenant_id,
            agent_id=chosen.agent_id,
            office_name=office.name,
            reason=trace.model_dump_json(),
        )
        await self.storage.save_assignment(assignment)
        load_after = await self.storage.increment_agent_load(ticket.tenant_id, chosen.agent_id)

        # Record the load transition INCR actually produced (other workers may have moved it).
        trace.load_before = load_after - 1
        trace.load_after = load_after
        trace.steps.append(f"Load: {trace.load_before} -> {trace.load_after}")
        assignment.reason = trace.model_dump_json()
        await self.storage.save_assignment(assignment)

        logger.info(
            "[Assignment] Ticket #%d -> %s (%s):\n%s", ticket_id, chosen.name, office.name, "\n".join(trace.steps)
        )
        return AssignmentOutcome(
            agent_id=chosen.agent_id,
            agent_name=chosen.name,
            office_name=office.name,
            reason=assignment.reason,
        )

    def _pick_by_score(
        self,
        office: Office,
        pool: list[Agent],
        category: str,
        language: str,
        segment: Optional[str],
    ) -> tuple[Agent, AssignmentTrace]:
        all_terms = [score_terms(a, office.name, category, language, segment) for a in pool]
        scores = [sum(t.points for t in terms) for terms in all_terms]
        best = select_best(scores, [a.current_load for a in pool])
        chosen = pool[best]
        trace = AssignmentTrace(
            strategy="scoring",
            terms=all_terms[best],
            score=scores[best],
            candidates=len(pool),
            steps=[
                f"2. Scored {len(pool)} agents",
                f"3. Best candidate: {chosen.name} with score {scores[best]}",
                f"4. Score details: {format_terms(all_terms[best])}",
            ],
        )
        return chosen, trace

    async def _pick_round_robin(self, office: Office, pool: list[Agent]) -> tuple[Agent, AssignmentTrace]:
        local = [a for a in pool if a.office == office.name] or pool
        least_loaded = sorted(local, key=lambda a: (a.current_load, a.agent_id))[:ROUND_ROBIN_WIDTH]
        # Stable slot order so the counter alternates even as loads shift
        top = sorted(least_loaded, key=lambda a: a.agent_id)
        turn = await self.storage.next_round_robin_turn(office.name)
        chosen = top[turn % len(top)]
        trace = AssignmentTrace(
            strategy="round_robin",
            candidates=len(top),
            steps=[
                f"2. Least-loaded agents: {', '.join(a.name for a in top)}",
                f"3. Round-robin turn {turn}: {chosen.name}",
            ],
        )
        return chosen, trace

    async def assign_to_automation(
        self,
        ticket_id: int,
        classification_id: Optional[int],
        tenant_id: int,
    ) -> AssignmentOutcome:
        """Assign a ticket already resolved upstream to the automation agent. No scoring, no load change."""
        bot = await self.storage.find_agent_by_name(tenant_id, self.automation_agent_name)
        if bot is None:
            raise RoutingConfigError(f"{self.automation_agent_name!r} not found for tenant #{tenant_id}")
        trace = AssignmentTrace(
            strategy="automation",
            steps=["Ticket resolved automatically by the AI assistant", "Assigned to the bot."],
        )
        assignment = Assignment(
            ticket_id=ticket_id,
            classification_id=classification_id,
            tenant_id=tenant_id,
            agent_id=bot.agent_id,
            office_name=None,
            reason=trace.model_dump_json(),
        )
        await self.storage.save_assignment(assignment)
        return AssignmentOutcome(agent_id=bot.agent_id, agent_name=bot.name, office_name=None, reason=assignment.reason)
