from __future__ import annotations

from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from signflow.models.base import TimestampedModel, UUIDModel


class AuditLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "audit_logs"

    org_id: UUID | None = Field(default=None, index=True)
    document_id: UUID | None = Field(default=None, foreign_key="documents.id", index=True)
    envelope_id: UUID | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    actor_role: str | None = Field(default=None)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)
