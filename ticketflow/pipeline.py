"""
Analysis pipeline: the handler the worker pool calls for every ticket.

  1. Resolve the durable ticket row (idempotency: an already classified ticket is skipped)
  2. Classify with the LLM (fixed fallback on any failure)
  3. Persist the classification
  4. Geocode (null coordinates on failure)
  5. Assign: scoring engine, or the automation agent for tickets resolved upstream
  6. Invalidate the stats cache (always)

Only storage failures in step 1 and routing configuration errors in step 5
propagate to the worker pool's retry.
"""

import logging
import time
from typing import Optional

from ticketflow.classifier import Classifier
from ticketflow.config import NEW_STATUS, RESOLVED_STATUS
from ticketflow.exceptions import ClassificationError, RoutingConfigError
from ticketflow.models import ClassificationResult, TicketRecord, UnifiedTicket
from ticketflow.normalizer import normalize_import, synthesize_external_id
from ticketflow.services.assignment import AssignmentEngine
from ticketflow.services.cache import StatsCache
from ticketflow.services.geo import Geocoder
from ticketflow.services.storage import Storage

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY_CHARS = 200


def fallback_classification(text: str) -> ClassificationResult:
    """Neutral, low-priority result used whenever the model cannot be used."""
    return ClassificationResult(
        category="Консультация",
        sentiment="Нейтральный",
        priority=2,
        language="RU",
        summary=text[:FALLBACK_SUMMARY_CHARS],
        recommendation="Требуется ручная проверка (LLM недоступен)",
    )


class AnalysisPipeline:
    def __init__(
        self,
        storage: Storage,
        classifier: Classifier,
        geocoder: Geocoder,
        engine: AssignmentEngine,
        cache: StatsCache,
    ):
        self.storage = storage
        self.classifier = classifier
        self.geocoder = geocoder
        self.engine = engine
        self.cache = cache

    async def _resolve_ticket(self, ticket: UnifiedTicket) -> Optional[TicketRecord]:
        """Existing or newly created row; None when the ticket was already analysed."""
        if ticket.external_id:
            existing = await self.storage.find_ticket(ticket.external_id, ticket.tenant_id)
            if existing is not None:
                if await self.storage.get_classification_for_ticket(existing.ticket_id):
                    if await self.storage.get_assignment(existing.ticket_id) is None:
                        logger.warning(
                            "[Analysis] Ticket %r (#%d) is classified but has no assignment; needs manual routing",
                            ticket.label(),
                            existing.ticket_id,
                        )
                    return None
                return existing
            return await self.storage.create_ticket(ticket, ticket.external_id)
        return await self.storage.create_ticket(ticket, synthesize_external_id(ticket.source))

    async def _classify(self, ticket: UnifiedTicket, label: str) -> ClassificationResult:
        try:
            return await self.classifier.classify(ticket.text, ticket.images)
        except ClassificationError as e:
            logger.error("[Analysis] LLM failed for %r (%s): %s", label, e.kind, e)
        except Exception:
            logger.exception("[Analysis] Unexpected classifier error for %r", label)
        return fallback_classification(ticket.text)

    async def _geocode(self, ticket: UnifiedTicket, ticket_id: int, label: str) -> tuple[Optional[float], Optional[float]]:
        try:
            coords = await self.geocoder.geocode(ticket.country, ticket.city, ticket.street, ticket.house)
            if coords:
                await self.storage.set_ticket_coordinates(ticket_id, *coords)
                return coords
        except Exception as e:
            logger.error("[Analysis] Geocoding failed for %r: %s", label, e)
        return None, None

    async def handle(self, ticket: UnifiedTicket) -> None:
        start = time.perf_counter()
        label = ticket.label()
        logger.info("[Analysis] Processing ticket %r (source: %s)", label, ticket.source.value)

        try:
            record = await self._resolve_ticket(ticket)
            if record is None:
                logger.info("[Analysis] Ticket %r already analyzed, skipping", label)
                return

            result = await self._classify(ticket, label)
            classification, created = await self.storage.create_classification(record.ticket_id, result)
            if not created:
                # Another worker analysed the same ticket concurrently and owns the assignment
                logger.info("[Analysis] Ticket %r classified concurrently, skipping", label)
                return

            lat, lon = await self._geocode(ticket, record.ticket_id, label)

            status = ticket.status or NEW_STATUS
            try:
                if status != RESOLVED_STATUS:
                    outcome = await self.engine.assign(record.ticket_id, classification.classification_id, lat, lon)
                    logger.info("[Analysis] Ticket %r -> %s (%s)", label, outcome.agent_name, outcome.office_name)
                else:
                    outcome = await self.engine.assign_to_automation(
                        record.ticket_id, classification.classification_id, ticket.tenant_id
                    )
                    logger.info("[Analysis] Ticket %r already resolved, assigned to %s", label, outcome.agent_name)
            except RoutingConfigError:
                raise
            except Exception as e:
                logger.error("[Analysis] Assignment failed for %r: %s", label, e)
        finally:
            await self._invalidate_cache()

        logger.info("[Analysis] Done %r in %.0fms", label, (time.perf_counter() - start) * 1000)

    async def _invalidate_cache(self) -> None:
        try:
            await self.cache.invalidate()
        except Exception as e:
            logger.warning("[Analysis] Stats cache invalidation failed: %s", e)


async def reprocess_unanalyzed(storage: Storage, queue, tenant_id: int) -> int:
    """Backfill: enqueue every stored ticket of the tenant that has no classification yet."""
    records = await storage.list_unanalyzed_tickets(tenant_id)
    if not records:
        return 0
    logger.info("[Processing] Found %d unanalyzed tickets", len(records))
    tickets = [
        normalize_import(
            {
                "guid": r.external_id,
                "description": r.text,
                "segment": r.segment,
                "language": r.language,
                "gender": r.gender,
                "birth_date": r.birth_date,
                "country": r.country,
                "city": r.city,
                "street": r.street,
                "house": r.house,
                "contact": r.contact,
                "status": r.status,
            },
            tenant_id,
        )
        for r in records
    ]
    count = await queue.enqueue_batch(tickets)
    logger.info("[Processing] Enqueued %d tickets for analysis", count)
    return count
