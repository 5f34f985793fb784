from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlmodel import Session, select

from signflow.models.envelope import EffectStatus, EnvelopeEffect
from signflow.services.audit import AuditService
from signflow.services.side_effects import (
    AuditedDownstreamActions,
    EffectLedger,
    ExecutionContext,
    SideEffect,
    SideEffectDispatcher,
    resolve_side_effect,
)

from .conftest import RecordingActions, seed_envelope


def _context(seeded) -> ExecutionContext:
    return ExecutionContext(
        org_id=seeded.document.org_id,
        document_id=seeded.document.id,
        envelope_id=seeded.envelope.id,
        executed_file_id=uuid4(),
        signer_name="Jane Client",
        signer_email="jane@example.com",
        signer_ip="203.0.113.5",
    )


def test_resolve_prefers_entity_on_document(db_session: Session, storage) -> None:
    proposal_id = uuid4()
    seeded = seed_envelope(
        db_session,
        storage,
        signers=[{"email": "a@example.com"}],
        source_entity_type="proposal",
        source_entity_id=proposal_id,
        metadata={"change_order_id": "co-1"},
    )

    assert resolve_side_effect(seeded.document) == SideEffect("proposal", str(proposal_id))


def test_resolve_document_origin_beats_earlier_metadata_key(db_session: Session, storage) -> None:
    selection_id = uuid4()
    seeded = seed_envelope(
        db_session,
        storage,
        signers=[{"email": "a@example.com"}],
        source_entity_type="selection",
        source_entity_id=selection_id,
        metadata={"proposal_id": "p-1"},
    )

    assert resolve_side_effect(seeded.document) == SideEffect("selection", str(selection_id))


def test_resolve_falls_back_to_metadata_in_fixed_order(db_session: Session, storage) -> None:
    seeded = seed_envelope(
        db_session,
        storage,
        signers=[{"email": "a@example.com"}],
        metadata={"selection_id": "sel-9", "change_order_id": " co-1 "},
    )

    assert resolve_side_effect(seeded.document) == SideEffect("change_order", "co-1")


def test_resolve_without_origin(db_session: Session, storage) -> None:
    seeded = seed_envelope(db_session, storage, signers=[{"email": "a@example.com"}], metadata={"proposal_id": ""})

    assert resolve_side_effect(seeded.document) is None


def test_dispatch_runs_action_once(db_session: Session, storage) -> None:
    seeded = seed_envelope(
        db_session,
        storage,
        signers=[{"email": "a@example.com"}],
        metadata={"selection_id": "sel-9"},
    )
    actions = RecordingActions()
    dispatcher = SideEffectDispatcher(EffectLedger(db_session), actions)

    assert dispatcher.dispatch(seeded.document, _context(seeded)) == SideEffect("selection", "sel-9")
    dispatcher.dispatch(seeded.document, _context(seeded))

    assert [(kind, entity_id) for kind, entity_id, _ in actions.calls] == [("selection", "sel-9")]
    effect = db_session.exec(select(EnvelopeEffect)).one()
    assert effect.effect_key == "selection:sel-9"
    assert effect.status == EffectStatus.COMPLETED
    assert effect.attempts == 1


def test_failed_effect_is_retried(db_session: Session, storage) -> None:
    seeded = seed_envelope(db_session, storage, signers=[{"email": "a@example.com"}])
    ledger = EffectLedger(db_session)
    attempts: list[int] = []

    def flaky() -> None:
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("downstream unavailable")

    assert ledger.run(seeded.document.org_id, seeded.envelope.id, "proposal:p-1", flaky) is False
    effect = ledger.get(seeded.envelope.id, "proposal:p-1")
    assert effect.status == EffectStatus.FAILED
    assert effect.last_error == "downstream unavailable"

    assert ledger.run(seeded.document.org_id, seeded.envelope.id, "proposal:p-1", flaky) is True
    assert ledger.run(seeded.document.org_id, seeded.envelope.id, "proposal:p-1", flaky) is False
    effect = ledger.get(seeded.envelope.id, "proposal:p-1")
    assert effect.status == EffectStatus.COMPLETED
    assert effect.attempts == 2
    assert len(attempts) == 2


def test_pending_effect_blocks_until_stale(db_session: Session, storage) -> None:
    seeded = seed_envelope(db_session, storage, signers=[{"email": "a@example.com"}])
    ledger = EffectLedger(db_session, stale_after_seconds=60)
    org_id, envelope_id = seeded.document.org_id, seeded.envelope.id

    in_flight = ledger.begin(org_id, envelope_id, "completion_email:a@example.com")
    assert in_flight is not None
    assert ledger.begin(org_id, envelope_id, "completion_email:a@example.com") is None

    later = datetime.now(timezone.utc) + timedelta(minutes=5)
    retried = ledger.begin(org_id, envelope_id, "completion_email:a@example.com", now=later)
    assert retried is not None
    assert retried.attempts == 2


def test_default_actions_record_audit_events(db_session: Session, storage) -> None:
    proposal_id = uuid4()
    seeded = seed_envelope(
        db_session,
        storage,
        signers=[{"email": "a@example.com"}],
        source_entity_type="proposal",
        source_entity_id=proposal_id,
    )
    audit = AuditService(db_session)
    dispatcher = SideEffectDispatcher(EffectLedger(db_session), AuditedDownstreamActions(audit))

    dispatcher.dispatch(seeded.document, _context(seeded))

    events = audit.list_events(event_type="proposal.accepted_contract_created", envelope_id=seeded.envelope.id)
    assert len(events) == 1
    assert events[0].details["proposal_id"] == str(proposal_id)
    assert events[0].details["signer_name"] == "Jane Client"
    assert events[0].ip_address == "203.0.113.5"
