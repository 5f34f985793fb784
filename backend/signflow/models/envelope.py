from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field

from signflow.models.base import AwareDateTime, OrgScopedModel, TimestampedModel, UUIDModel


class EnvelopeStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_SIGNED = "partially_signed"
    EXECUTED = "executed"
    VOIDED = "voided"
    EXPIRED = "expired"


ENVELOPE_TERMINAL_STATUSES = frozenset(
    {EnvelopeStatus.EXECUTED, EnvelopeStatus.VOIDED, EnvelopeStatus.EXPIRED}
)


class SigningRequestStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    SIGNED = "signed"
    VOIDED = "voided"
    EXPIRED = "expired"


REQUEST_CLOSED_STATUSES = frozenset(
    {SigningRequestStatus.SIGNED, SigningRequestStatus.VOIDED, SigningRequestStatus.EXPIRED}
)


class EnvelopeEventType(str, Enum):
    SENT = "envelope_sent"
    RECIPIENT_SIGNED = "recipient_signed"
    EXECUTED = "envelope_executed"
    EXECUTION_FAILED = "envelope_execution_failed"


class Envelope(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    __tablename__ = "envelopes"

    project_id: UUID = Field(index=True)
    document_id: UUID = Field(foreign_key="documents.id", index=True)
    document_revision: int = Field(default=1, ge=1)
    source_entity_type: str | None = Field(default=None, max_length=32)
    source_entity_id: UUID | None = Field(default=None)
    status: EnvelopeStatus = Field(default=EnvelopeStatus.DRAFT, index=True)
    subject: str | None = Field(default=None)
    expires_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    sent_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    executed_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    voided_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    execution_claim: UUID | None = Field(default=None)
    execution_claimed_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    created_by: UUID | None = Field(default=None)
    metadata_json: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False, default=dict),
    )


class SigningRequest(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    __tablename__ = "document_signing_requests"

    document_id: UUID = Field(foreign_key="documents.id", index=True)
    revision: int = Field(default=1, ge=1)
    envelope_id: UUID | None = Field(default=None, index=True)
    group_id: UUID | None = Field(default=None, index=True)
    sequence: Optional[int] = Field(default=1)
    required: Optional[bool] = Field(default=True)
    signer_role: str | None = Field(default=None, max_length=64)
    sent_to_email: str | None = Field(default=None, max_length=320)
    token_hash: str = Field(max_length=128, unique=True, index=True)
    status: SigningRequestStatus = Field(default=SigningRequestStatus.DRAFT)
    expires_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    sent_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    signed_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
    used_count: int = Field(default=0, ge=0)
    max_uses: int = Field(default=1, ge=1)
    created_by: UUID | None = Field(default=None)


class Signature(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    __tablename__ = "document_signatures"
    __table_args__ = (
        UniqueConstraint("signing_request_id", name="uq_document_signatures_signing_request"),
    )

    signing_request_id: UUID = Field(foreign_key="document_signing_requests.id", index=True)
    document_id: UUID = Field(foreign_key="documents.id", index=True)
    revision: int = Field(default=1, ge=1)
    signer_name: str = Field(max_length=256)
    signer_email: str | None = Field(default=None, max_length=320)
    signer_ip: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None)
    consent_text: str
    values: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)


class EnvelopeEvent(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    __tablename__ = "envelope_events"

    envelope_id: UUID = Field(index=True)
    document_id: UUID | None = Field(default=None, index=True)
    event_type: str = Field(max_length=64, index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)


class EffectStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EnvelopeEffect(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    """One downstream effect of an execution (business action or completion e-mail)."""

    __tablename__ = "envelope_effects"
    __table_args__ = (
        UniqueConstraint("envelope_id", "effect_key", name="uq_envelope_effects_envelope_key"),
    )

    envelope_id: UUID = Field(index=True)
    effect_key: str = Field(max_length=255)
    status: EffectStatus = Field(default=EffectStatus.PENDING)
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None, sa_type=AwareDateTime)
