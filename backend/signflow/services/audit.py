from typing import Optional
from uuid import UUID

from sqlmodel import Session, select

from signflow.models.audit import AuditLog


class AuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record_event(
        self,
        event_type: str,
        org_id: UUID | None = None,
        document_id: UUID | None = None,
        envelope_id: UUID | None = None,
        actor_role: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
    ) -> None:
        log = AuditLog(
            org_id=org_id,
            document_id=document_id,
            envelope_id=envelope_id,
            event_type=event_type,
            actor_role=actor_role,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        self.session.add(log)
        self.session.commit()

    def list_events(
        self,
        event_type: Optional[str] = None,
        document_id: Optional[UUID] = None,
        envelope_id: Optional[UUID] = None,
    ) -> list[AuditLog]:
        query = select(AuditLog)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        if document_id:
            query = query.where(AuditLog.document_id == document_id)
        if envelope_id:
            query = query.where(AuditLog.envelope_id == envelope_id)
        return list(self.session.exec(query.order_by(AuditLog.created_at)).all())
