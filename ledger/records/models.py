from datetime import UTC, date, datetime
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class EntityType(StrEnum):
    CORPORATION = "CORPORATION"
    AGENCY = "AGENCY"
    NONPROFIT = "NONPROFIT"
    VENDOR = "VENDOR"
    INDIVIDUAL_PUBLIC_OFFICIAL = "INDIVIDUAL_PUBLIC_OFFICIAL"


class CardCategory(StrEnum):
    LABOR = "labor"
    CONSUMER = "consumer"
    ENVIRONMENT = "environment"
    PROCUREMENT = "procurement"
    PRIVACY = "privacy"
    LOBBYING = "lobbying"
    FRAUD = "fraud"
    GOVERNANCE = "governance"
    OTHER = "other"


class CardStatus(StrEnum):
    DRAFT = "DRAFT"
    REVIEW = "REVIEW"
    PUBLISHED = "PUBLISHED"
    RETRACTED = "RETRACTED"


class EvidenceStrength(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class DocType(StrEnum):
    HTML = "HTML"
    PDF = "PDF"
    OTHER = "OTHER"


class VerificationStatus(StrEnum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


class AuditAction(StrEnum):
    CREATE_ENTITY = "CREATE_ENTITY"
    UPDATE_ENTITY = "UPDATE_ENTITY"
    REVIEW_INTAKE = "REVIEW_INTAKE"
    PROMOTE_INTAKE = "PROMOTE_INTAKE"
    REJECT_INTAKE = "REJECT_INTAKE"


class CreateEntityInput(BaseModel):
    name: str = Field(min_length=1, max_length=300)
    type: EntityType
    aliases: list[str] = Field(default_factory=list)
    website: str | None = None
    parent_entity_id: str | None = None
    identifiers: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class UpdateEntityInput(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=300)
    type: EntityType | None = None
    aliases: list[str] | None = None
    website: str | None = None
    parent_entity_id: str | None = None
    identifiers: dict[str, str] | None = None


class Entity(BaseModel):
    entity_id: str = Field(default_factory=_new_id)
    name: str
    normalized_name: str
    type: EntityType
    aliases: list[str] = Field(default_factory=list)
    website: str | None = None
    parent_entity_id: str | None = None
    identifiers: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Source(BaseModel):
    source_id: str = Field(default_factory=_new_id)
    title: str
    publisher: str
    url: str
    doc_type: DocType = DocType.HTML
    verification_status: VerificationStatus = VerificationStatus.PENDING
    excerpt: str | None = None
    raw_content_ref: str | None = None
    content_sha256: str | None = None
    retrieved_at: datetime = Field(default_factory=_now)
    created_at: datetime = Field(default_factory=_now)
    created_by: str


class Card(BaseModel):
    card_id: str = Field(default_factory=_new_id)
    title: str
    claim: str
    summary: str
    category: CardCategory
    entity_ids: list[str]
    event_date: date
    source_refs: list[str] = Field(default_factory=list)
    evidence_strength: EvidenceStrength = EvidenceStrength.MEDIUM
    status: CardStatus = CardStatus.DRAFT
    tags: list[str] = Field(default_factory=list)
    version: int = 1
    created_at: datetime = Field(default_factory=_now)
    created_by: str


class AuditLogEntry(BaseModel):
    log_id: str = Field(default_factory=_new_id)
    actor: str
    action: AuditAction
    target_type: str
    target_id: str
    timestamp: datetime = Field(default_factory=_now)
    diff: dict | None = None
    metadata: dict | None = None
    request_id: str | None = None
