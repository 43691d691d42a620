"""Data models for the ticket intake and routing pipeline."""

import time
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Pipeline-owned meta flag: set when a failed ticket is pushed back for its single retry.
RETRY_FLAG = "__retried"


class TicketChannel(str, Enum):
    """Channels a ticket can arrive from."""

    IMPORT = "import"
    VOICE = "voice"
    CHAT = "chat"


class ImageKind(str, Enum):
    URL = "url"
    BASE64 = "base64"


class ImageAttachment(BaseModel):
    """Screenshot or photo attached to a ticket."""

    type: ImageKind = Field(..., description="url = external link, base64 = inline data")
    data: str = Field(..., description="The URL or the base64-encoded content")
    mime_type: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("mime_type", "mimeType"),
        description="MIME type for base64 data, e.g. image/png",
    )


# --- Unified ticket (queue payload) ---


class UnifiedTicket(BaseModel):
    """Channel-agnostic ticket; the only shape the analysis pipeline sees."""

    text: str = Field(default="", description="Complaint / request body")
    source: TicketChannel
    tenant_id: int = Field(..., description="Owning tenant (company)")

    external_id: Optional[str] = Field(None, description="External guid; synthesized at ingestion if missing")
    segment: Optional[str] = None
    language: Optional[str] = None
    gender: Optional[str] = None
    birth_date: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    street: Optional[str] = None
    house: Optional[str] = None
    contact: Optional[str] = None
    status: Optional[str] = None

    images: list[ImageAttachment] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict, description="Channel-specific fields and pipeline flags")

    @property
    def retried(self) -> bool:
        return bool(self.meta.get(RETRY_FLAG))

    def label(self) -> str:
        """Identifier used in log lines."""
        return self.external_id or str(self.meta.get("callId") or self.meta.get("sessionId") or "unknown")


# --- Raw channel payloads ---


class _ChannelPayload(BaseModel):
    """Lenient base: unknown keys ignored, scalar values coerced to strings."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("*", mode="before")
    @classmethod
    def _scalars_to_str(cls, value: Any, info):
        field = cls.model_fields.get(info.field_name)
        if field is not None and field.annotation == Optional[str]:
            if value is None or value == "":
                return None
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return str(value)
            if not isinstance(value, str):
                return None
        return value


class ImportRecord(_ChannelPayload):
    """Row from a CSV / JSON import, already mapped to known columns."""

    guid: Optional[str] = Field(None, validation_alias=AliasChoices("guid", "external_id", "externalId"))
    description: Optional[str] = Field(None, validation_alias=AliasChoices("description", "text"))
    segment: Optional[str] = None
    language: Optional[str] = None
    gender: Optional[str] = None
    birth_date: Optional[str] = Field(None, validation_alias=AliasChoices("birth_date", "birthDate"))
    country: Optional[str] = None
    city: Optional[str] = None
    street: Optional[str] = None
    house: Optional[str] = None
    contact: Optional[str] = None
    status: Optional[str] = None
    format: Optional[str] = Field(None, description="csv | json | xlsx")


class Turn(_ChannelPayload):
    role: Optional[str] = None
    text: Optional[str] = None


class VoicePayload(_ChannelPayload):
    """Voice-bot call: transcript turns plus call metadata."""

    phone: Optional[str] = None
    call_id: Optional[str] = Field(None, validation_alias=AliasChoices("call_id", "callId"))
    duration: Optional[float] = None
    city: Optional[str] = None
    status: Optional[str] = None
    transcript: list[Turn] = Field(default_factory=list)


class ChatPayload(_ChannelPayload):
    """Chat-widget session: message turns plus optional images."""

    session_id: Optional[str] = Field(None, validation_alias=AliasChoices("session_id", "sessionId"))
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("user_id", "userId"))
    city: Optional[str] = None
    status: Optional[str] = None
    messages: list[Turn] = Field(default_factory=list)
    images: list[ImageAttachment] = Field(default_factory=list)


# --- Classification ---


class ClassificationResult(BaseModel):
    """Structured output of the classification model. All fields required, no type coercion."""

    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)

    category: str = Field(..., validation_alias=AliasChoices("category", "ticketType", "ticket_type"))
    sentiment: str
    priority: int = Field(..., description="0-10 as returned by the model; not clamped")
    language: str
    summary: str
    recommendation: str


class StoredClassification(ClassificationResult):
    """Classification row linked to a ticket. Written once, never updated."""

    classification_id: int
    ticket_id: int
    created_at: float = Field(default_factory=time.time)


# --- Storage rows ---


class TicketRecord(BaseModel):
    """Durable ticket row produced from a unified ticket."""

    ticket_id: int
    tenant_id: int
    external_id: str
    text: str = ""
    source: TicketChannel = TicketChannel.IMPORT
    segment: Optional[str] = None
    language: Optional[str] = None
    gender: Optional[str] = None
    birth_date: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    street: Optional[str] = None
    house: Optional[str] = None
    contact: Optional[str] = None
    status: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: float = Field(default_factory=time.time)


class Agent(BaseModel):
    """A manager (human) or the tenant's automation agent."""

    agent_id: str = Field(..., description="Unique agent identifier")
    name: str = Field(..., description="Display name")
    tenant_id: int
    office: str = Field(..., description="Office the agent sits in")
    skills: list[str] = Field(default_factory=list, description="Categories, languages and the VIP tag")
    current_load: int = Field(default=0, ge=0)


class Office(BaseModel):
    """Business unit / office used for nearest-office scoring."""

    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# --- Assignment ---


class ScoreTerm(BaseModel):
    label: str
    points: int


class AssignmentTrace(BaseModel):
    """Reconstructable explanation of a routing decision."""

    strategy: str
    target_office: Optional[str] = None
    distance_km: Optional[int] = None
    terms: list[ScoreTerm] = Field(default_factory=list)
    score: Optional[int] = None
    load_before: Optional[int] = None
    load_after: Optional[int] = None
    candidates: int = 0
    steps: list[str] = Field(default_factory=list)


class Assignment(BaseModel):
    """The current assignment of a ticket. Re-assignment replaces it."""

    ticket_id: int
    classification_id: Optional[int] = None
    tenant_id: int
    agent_id: str
    office_name: Optional[str] = None
    reason: str = Field(..., description="AssignmentTrace serialized as JSON")
    assigned_at: float = Field(default_factory=time.time)


class AssignmentOutcome(BaseModel):
    agent_id: str
    agent_name: str
    office_name: Optional[str] = None
    reason: str


# --- Ingestion API ---


class TicketAccepted(BaseModel):
    """Response for 202 Accepted: ticket queued for analysis."""

    external_id: str
    message: str = Field(default="Ticket queued for analysis")


class BatchAccepted(BaseModel):
    accepted: list[TicketAccepted] = Field(..., description="One entry per submitted ticket")
    message: str = ""
