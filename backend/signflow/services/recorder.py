from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from signflow.core.errors import ExhaustedError, PersistenceFailure
from signflow.models.base import utcnow
from signflow.models.envelope import (
    REQUEST_CLOSED_STATUSES,
    EnvelopeEvent,
    EnvelopeEventType,
    Signature,
    SigningRequest,
    SigningRequestStatus,
)

logger = logging.getLogger("signflow.signing")


@dataclass(frozen=True)
class SignerIdentity:
    name: str
    email: str | None = None
    ip: str | None = None
    user_agent: str | None = None


class SignatureRecorder:
    """Stores one signer's submission and closes their request in a single transaction."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        request: SigningRequest,
        envelope_id: UUID,
        signer: SignerIdentity,
        values: Mapping[str, Any],
        consent_text: str,
        signer_role: str | None = None,
        now: datetime | None = None,
    ) -> Signature:
        now = now or utcnow()
        request_id = request.id
        try:
            # guarded transition; concurrent submissions for the same link match zero rows
            result = self.session.exec(
                update(SigningRequest)
                .where(SigningRequest.id == request_id)
                .where(SigningRequest.status.notin_(list(REQUEST_CLOSED_STATUSES)))
                .where(SigningRequest.used_count < SigningRequest.max_uses)
                .values(
                    status=SigningRequestStatus.SIGNED,
                    signed_at=now,
                    used_count=SigningRequest.used_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.session.rollback()
                logger.info("Signing request %s was already used; rejecting duplicate submission", request_id)
                raise ExhaustedError()

            signature = Signature(
                org_id=request.org_id,
                signing_request_id=request_id,
                document_id=request.document_id,
                revision=request.revision,
                signer_name=signer.name,
                signer_email=signer.email,
                signer_ip=signer.ip,
                user_agent=signer.user_agent,
                consent_text=consent_text,
                values=dict(values),
                created_at=now,
            )
            self.session.add(signature)
            self.session.add(
                EnvelopeEvent(
                    org_id=request.org_id,
                    envelope_id=envelope_id,
                    document_id=request.document_id,
                    event_type=EnvelopeEventType.RECIPIENT_SIGNED.value,
                    payload={
                        "signing_request_id": str(request_id),
                        "sequence": request.sequence if request.sequence is not None else 1,
                        "signer_role": signer_role,
                        "signed_at": now.isoformat(),
                    },
                    created_at=now,
                )
            )
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.info("Duplicate signature for request %s rejected by the database", request_id)
            raise ExhaustedError() from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Failed to record signature for request %s", request_id)
            raise PersistenceFailure(f"Failed to record signature: {exc}") from exc

        self.session.refresh(request)
        self.session.refresh(signature)
        logger.info("Recorded signature %s for request %s", signature.id, request_id)
        return signature
