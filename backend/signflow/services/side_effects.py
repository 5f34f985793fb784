from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from signflow.models.base import as_utc, utcnow
from signflow.models.document import Document, document_metadata
from signflow.models.envelope import EffectStatus, EnvelopeEffect
from signflow.services.audit import AuditService

logger = logging.getLogger("signflow.side_effects")

SIDE_EFFECT_ENTITY_TYPES = ("proposal", "change_order", "selection")


@dataclass(frozen=True)
class SideEffect:
    entity_type: str
    entity_id: str


@dataclass(frozen=True)
class ExecutionContext:
    org_id: UUID
    document_id: UUID
    envelope_id: UUID
    executed_file_id: UUID
    signer_name: str
    signer_email: str | None = None
    signer_ip: str | None = None


def resolve_side_effect(document: Document) -> SideEffect | None:
    """First originating entity found on the document itself or in its metadata."""
    if document.source_entity_type in SIDE_EFFECT_ENTITY_TYPES and document.source_entity_id:
        return SideEffect(document.source_entity_type, str(document.source_entity_id))
    metadata = document_metadata(document)
    for entity_type in SIDE_EFFECT_ENTITY_TYPES:
        raw = metadata.get(f"{entity_type}_id")
        if isinstance(raw, str) and raw.strip():
            return SideEffect(entity_type, raw.strip())
    return None


class DownstreamActions(Protocol):
    def accept_proposal(self, proposal_id: str, context: ExecutionContext) -> None:
        ...

    def approve_change_order(self, change_order_id: str, context: ExecutionContext) -> None:
        ...

    def confirm_selection(self, selection_id: str, context: ExecutionContext) -> None:
        ...


class AuditedDownstreamActions:
    """Default collaborator: records the business outcome as an audit event."""

    def __init__(self, audit_service: AuditService) -> None:
        self.audit_service = audit_service

    def _record(self, event_type: str, key: str, entity_id: str, context: ExecutionContext) -> None:
        self.audit_service.record_event(
            event_type=event_type,
            org_id=context.org_id,
            document_id=context.document_id,
            envelope_id=context.envelope_id,
            actor_role="signer",
            ip_address=context.signer_ip,
            details={
                key: entity_id,
                "executed_file_id": str(context.executed_file_id),
                "signer_name": context.signer_name,
                "signer_email": context.signer_email,
            },
        )

    def accept_proposal(self, proposal_id: str, context: ExecutionContext) -> None:
        self._record("proposal.accepted_contract_created", "proposal_id", proposal_id, context)

    def approve_change_order(self, change_order_id: str, context: ExecutionContext) -> None:
        self._record("change_order.approved", "change_order_id", change_order_id, context)

    def confirm_selection(self, selection_id: str, context: ExecutionContext) -> None:
        self._record("selection.confirmed", "selection_id", selection_id, context)


class EffectLedger:
    """Idempotency records for effects that must run at most once per envelope."""

    def __init__(self, session: Session, stale_after_seconds: int = 900) -> None:
        self.session = session
        self.stale_after = timedelta(seconds=stale_after_seconds)

    def get(self, envelope_id: UUID, effect_key: str) -> EnvelopeEffect | None:
        return self.session.exec(
            select(EnvelopeEffect)
            .where(EnvelopeEffect.envelope_id == envelope_id)
            .where(EnvelopeEffect.effect_key == effect_key)
            .execution_options(populate_existing=True)
        ).first()

    def begin(self, org_id: UUID, envelope_id: UUID, effect_key: str, now: datetime | None = None) -> EnvelopeEffect | None:
        """Reserve an effect for this caller, or ``None`` if it is done or in flight elsewhere."""
        now = now or utcnow()
        effect = self.get(envelope_id, effect_key)
        if effect is None:
            effect = EnvelopeEffect(
                org_id=org_id,
                envelope_id=envelope_id,
                effect_key=effect_key,
                status=EffectStatus.PENDING,
                attempts=1,
                created_at=now,
                updated_at=now,
            )
            self.session.add(effect)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                return None
            self.session.refresh(effect)
            return effect

        if effect.status == EffectStatus.COMPLETED:
            return None
        last_touched = as_utc(effect.updated_at or effect.created_at)
        if effect.status == EffectStatus.PENDING and last_touched > now - self.stale_after:
            return None

        result = self.session.exec(
            update(EnvelopeEffect)
            .where(EnvelopeEffect.id == effect.id)
            .where(EnvelopeEffect.status == effect.status)
            .where(EnvelopeEffect.attempts == effect.attempts)
            .values(status=EffectStatus.PENDING, attempts=effect.attempts + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount != 1:
            return None
        self.session.refresh(effect)
        return effect

    def complete(self, effect: EnvelopeEffect, now: datetime | None = None) -> None:
        now = now or utcnow()
        effect.status = EffectStatus.COMPLETED
        effect.completed_at = now
        effect.updated_at = now
        effect.last_error = None
        self.session.add(effect)
        self.session.commit()

    def fail(self, effect: EnvelopeEffect, error: BaseException, now: datetime | None = None) -> None:
        effect.status = EffectStatus.FAILED
        effect.last_error = str(error)[:1000]
        effect.updated_at = now or utcnow()
        self.session.add(effect)
        self.session.commit()

    def run(
        self,
        org_id: UUID,
        envelope_id: UUID,
        effect_key: str,
        action: Callable[[], Any],
    ) -> bool:
        """Run ``action`` once for this key. Returns True when it ran and succeeded now."""
        effect = self.begin(org_id, envelope_id, effect_key)
        if effect is None:
            logger.info("Effect %s for envelope %s already handled; skipping", effect_key, envelope_id)
            return False
        try:
            action()
        except Exception as exc:
            self.session.rollback()
            logger.exception("Effect %s for envelope %s failed", effect_key, envelope_id)
            self.fail(effect, exc)
            return False
        self.complete(effect)
        return True


class SideEffectDispatcher:
    def __init__(self, ledger: EffectLedger, actions: DownstreamActions) -> None:
        self.ledger = ledger
        self.actions = actions

    def dispatch(self, document: Document, context: ExecutionContext) -> SideEffect | None:
        """Invoke the single downstream action matching the document's origin."""
        effect = resolve_side_effect(document)
        if effect is None:
            return None
        handlers: dict[str, Callable[[str, ExecutionContext], None]] = {
            "proposal": self.actions.accept_proposal,
            "change_order": self.actions.approve_change_order,
            "selection": self.actions.confirm_selection,
        }
        handler = handlers[effect.entity_type]
        self.ledger.run(
            context.org_id,
            context.envelope_id,
            f"{effect.entity_type}:{effect.entity_id}",
            lambda: handler(effect.entity_id, context),
        )
        return effect
