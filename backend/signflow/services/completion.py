from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from signflow.models.base import as_utc, utcnow
from signflow.models.document import Document
from signflow.models.envelope import (
    ENVELOPE_TERMINAL_STATUSES,
    REQUEST_CLOSED_STATUSES,
    Envelope,
    EnvelopeStatus,
    Signature,
    SigningRequest,
    SigningRequestStatus,
)

logger = logging.getLogger("signflow.signing")


@dataclass(frozen=True)
class CompletionSnapshot:
    all_required_signed: bool
    required_signed_count: int
    required_pending_count: int

    @property
    def partial_status(self) -> EnvelopeStatus:
        if self.required_signed_count > 0 and self.required_pending_count > 0:
            return EnvelopeStatus.PARTIALLY_SIGNED
        return EnvelopeStatus.SENT


def detect_completion(requests: Iterable[SigningRequest]) -> CompletionSnapshot:
    required = [request for request in requests if request.required is not False]
    signed = sum(1 for request in required if request.status == SigningRequestStatus.SIGNED)
    pending = sum(1 for request in required if request.status not in REQUEST_CLOSED_STATUSES)
    return CompletionSnapshot(
        all_required_signed=all(request.status == SigningRequestStatus.SIGNED for request in required),
        required_signed_count=signed,
        required_pending_count=pending,
    )


def merge_signature_values(signatures: Sequence[Signature]) -> dict[str, Any]:
    """Union of every signature's values; later submissions win per field id."""
    merged: dict[str, Any] = {}
    for signature in sorted(signatures, key=lambda item: (as_utc(item.created_at), str(item.id))):
        merged.update(signature.values or {})
    return merged


def ensure_envelope(session: Session, envelope_id: UUID, request: SigningRequest, document: Document) -> Envelope:
    """Load the envelope row, creating it for legacy group-scoped requests."""
    envelope = session.get(Envelope, envelope_id)
    if envelope:
        return envelope
    envelope = Envelope(
        id=envelope_id,
        org_id=request.org_id,
        project_id=document.project_id,
        document_id=document.id,
        document_revision=request.revision,
        source_entity_type=document.source_entity_type,
        source_entity_id=document.source_entity_id,
        status=EnvelopeStatus.SENT,
        sent_at=as_utc(request.sent_at),
        created_by=request.created_by,
    )
    session.add(envelope)
    try:
        session.commit()
    except IntegrityError:
        # a concurrent submission created it first
        session.rollback()
        envelope = session.get(Envelope, envelope_id)
        if envelope is None:
            raise
        return envelope
    session.refresh(envelope)
    logger.info("Materialised envelope %s for legacy signing scope", envelope_id)
    return envelope


def apply_partial_status(
    session: Session,
    envelope_id: UUID,
    snapshot: CompletionSnapshot,
    now: datetime | None = None,
) -> EnvelopeStatus | None:
    """Move a non-terminal envelope to sent/partially_signed; returns the status written."""
    now = now or utcnow()
    status = snapshot.partial_status
    result = session.exec(
        update(Envelope)
        .where(Envelope.id == envelope_id)
        .where(Envelope.status.notin_(list(ENVELOPE_TERMINAL_STATUSES)))
        .values(status=status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return status if result.rowcount == 1 else None
