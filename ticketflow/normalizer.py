"""
Ingestion normalizer: every channel (CSV/JSON import, voice bot, chat widget)
converts its raw payload into a single UnifiedTicket. The analysis pipeline
downstream never knows where the data came from.

normalize() never raises for a known channel: unknown keys are ignored and
malformed fields degrade to absent.
"""

import logging
import time
import uuid
from typing import Any, Callable, TypeVar, Union

from pydantic import BaseModel, ValidationError

from ticketflow.config import DEFAULT_COUNTRY
from ticketflow.models import ChatPayload, ImportRecord, TicketChannel, UnifiedTicket, VoicePayload

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


def _lenient_validate(model: type[P], raw: Any) -> P:
    """Validate raw into model, dropping top-level keys that fail until the rest validates."""
    data = dict(raw) if isinstance(raw, dict) else {}
    while True:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            bad = {err["loc"][0] for err in e.errors() if err["loc"]}
            bad &= set(data)
            if not bad:
                # Nothing left to drop; fall back to an empty payload
                return model.model_validate({})
            logger.debug("Dropping malformed %s fields: %s", model.__name__, sorted(map(str, bad)))
            for key in bad:
                data.pop(key, None)


def _join_turns(turns, sep: str) -> str:
    return sep.join(t.text for t in turns if t.text)


def normalize_import(raw: Any, tenant_id: int) -> UnifiedTicket:
    r = _lenient_validate(ImportRecord, raw)
    meta: dict[str, Any] = {"guid": r.guid}
    if r.format:
        meta["format"] = r.format
    return UnifiedTicket(
        text=r.description or "",
        source=TicketChannel.IMPORT,
        tenant_id=tenant_id,
        external_id=r.guid,
        segment=r.segment,
        language=r.language,
        gender=r.gender,
        birth_date=r.birth_date,
        country=r.country,
        city=r.city,
        street=r.street,
        house=r.house,
        contact=r.contact,
        status=r.status,
        meta=meta,
    )


def normalize_voice(raw: Any, tenant_id: int) -> UnifiedTicket:
    r = _lenient_validate(VoicePayload, raw)
    return UnifiedTicket(
        text=_join_turns(r.transcript, " "),
        source=TicketChannel.VOICE,
        tenant_id=tenant_id,
        city=r.city,
        status=r.status,
        country=DEFAULT_COUNTRY,
        contact=r.phone,
        meta={"phone": r.phone, "duration": r.duration, "callId": r.call_id},
    )


def normalize_chat(raw: Any, tenant_id: int) -> UnifiedTicket:
    r = _lenient_validate(ChatPayload, raw)
    return UnifiedTicket(
        text=_join_turns(r.messages, "\n"),
        source=TicketChannel.CHAT,
        tenant_id=tenant_id,
        city=r.city,
        status=r.status,
        images=r.images,
        meta={"sessionId": r.session_id, "userId": r.user_id},
    )


_NORMALIZERS: dict[TicketChannel, Callable[[Any, int], UnifiedTicket]] = {
    TicketChannel.IMPORT: normalize_import,
    TicketChannel.VOICE: normalize_voice,
    TicketChannel.CHAT: normalize_chat,
}


def normalize(channel: Union[TicketChannel, str], raw: Any, tenant_id: int) -> UnifiedTicket:
    """
    Convert a raw channel payload into a UnifiedTicket.

    The channel set is closed: an unknown channel name raises ValueError. For a
    known channel this never raises, and does not guarantee external_id is set;
    see synthesize_external_id().
    """
    channel = TicketChannel(channel)
    return _NORMALIZERS[channel](raw, tenant_id)


def synthesize_external_id(channel: Union[TicketChannel, str]) -> str:
    """Build an identifier for tickets that arrive without one: {channel}-{epoch_ms}-{suffix}."""
    value = channel.value if isinstance(channel, TicketChannel) else str(channel)
    return f"{value}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
