"""Envelope signing pipeline.

validate -> resolve token -> authorize sequence -> check fields -> record ->
detect completion -> (execute -> dispatch side effect -> notify) or
(route next signers -> notify).

Everything up to and including the recorded signature either succeeds or
raises a :class:`~signflow.core.errors.SigningError`. Steps after the record
are logged on failure and can be re-run with :meth:`resume_envelope`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import or_
from sqlmodel import Session, select

from signflow.core.config import SigningConfig
from signflow.core.errors import (
    MisconfiguredError,
    NotFoundError,
    OutOfOrderError,
    PersistenceFailure,
    SigningError,
    StorageFailure,
    ValidationFailedError,
)
from signflow.models.base import utcnow
from signflow.models.document import Document, DocumentField, StoredFile
from signflow.models.envelope import (
    ENVELOPE_TERMINAL_STATUSES,
    Envelope,
    EnvelopeEvent,
    EnvelopeEventType,
    EnvelopeStatus,
    Signature,
    SigningRequest,
    SigningRequestStatus,
)
from signflow.services.audit import AuditService
from signflow.services.completion import apply_partial_status, detect_completion, ensure_envelope
from signflow.services.executor import PDF_MIME, DocumentExecutor, load_document_fields
from signflow.services.fields import missing_required_fields, required_fields, visible_fields
from signflow.services.notification import EmailAttachment, NotificationService, resolve_completion_recipients
from signflow.services.recorder import SignatureRecorder, SignerIdentity
from signflow.services.rendering import PdfStampRenderer
from signflow.services.sequencing import (
    SequenceAuthorizer,
    load_scope_requests,
    next_signer_batch,
    pending_prior_signers,
    scope_id,
)
from signflow.services.side_effects import (
    AuditedDownstreamActions,
    DownstreamActions,
    EffectLedger,
    ExecutionContext,
    SideEffectDispatcher,
)
from signflow.services.storage import StorageBackend
from signflow.services.tokens import TokenResolver, check_usable
from signflow.utils.security import create_executed_file_token

logger = logging.getLogger("signflow.signing")

DEFAULT_SIGNER_ROLE = "client"


@dataclass(frozen=True)
class SubmitResult:
    success: bool
    executed_document_url: str | None = None
    envelope_status: str | None = None


@dataclass
class SigningContext:
    request: SigningRequest
    document: Document
    signer_role: str
    fields: list[DocumentField]
    required_field_ids: list[str]
    can_sign: bool
    reason: str | None = None


@dataclass
class _Execution:
    executed_file_id: UUID
    file_name: str
    content: bytes | None
    signer: SignerIdentity
    scope: Sequence[SigningRequest] = field(default_factory=list)


def signer_role_of(request: SigningRequest) -> str:
    return request.signer_role or DEFAULT_SIGNER_ROLE


class EnvelopeSigningService:
    def __init__(
        self,
        session: Session,
        config: SigningConfig,
        storage: StorageBackend,
        notification_service: NotificationService | None = None,
        actions: DownstreamActions | None = None,
        renderer: PdfStampRenderer | None = None,
    ) -> None:
        if config.require_object_storage and not getattr(storage, "durable", False):
            raise MisconfiguredError(
                "E-sign documents must be stored in durable object storage. Set FILES_STORAGE=s3."
            )
        self.session = session
        self.config = config
        self.storage = storage
        self.audit_service = AuditService(session)
        self.tokens = TokenResolver(session, config)
        self.authorizer = SequenceAuthorizer(session)
        self.recorder = SignatureRecorder(session)
        self.executor = DocumentExecutor(session, storage, config, renderer)
        self.ledger = EffectLedger(session, config.execution_claim_timeout_seconds)
        self.dispatcher = SideEffectDispatcher(self.ledger, actions or AuditedDownstreamActions(self.audit_service))
        self.notifications = notification_service or NotificationService(
            self.audit_service,
            public_app_url=config.public_app_url,
            max_workers=config.notification_max_workers,
        )

    # ------------------------------------------------------------------ reads

    def get_signing_context(self, token: str, now: datetime | None = None) -> SigningContext:
        request = self.tokens.lookup(token)
        document = self._get_document(request)
        role = signer_role_of(request)
        fields = load_document_fields(self.session, document.id, request.revision)

        can_sign = True
        reason: str | None = None
        try:
            check_usable(request, now)
            if pending_prior_signers(load_scope_requests(self.session, request), request):
                raise OutOfOrderError()
        except SigningError as exc:
            can_sign = False
            reason = str(exc)

        return SigningContext(
            request=request,
            document=document,
            signer_role=role,
            fields=visible_fields(fields, role),
            required_field_ids=[str(item.id) for item in required_fields(fields, role)],
            can_sign=can_sign,
            reason=reason,
        )

    def check_fields(self, token: str, values: Mapping[str, Any]) -> list[str]:
        request = self.tokens.resolve(token)
        document = self._get_document(request)
        fields = load_document_fields(self.session, document.id, request.revision)
        return missing_required_fields(fields, signer_role_of(request), values)

    # ----------------------------------------------------------------- submit

    def submit(
        self,
        token: str,
        signer_name: str,
        signer_email: str | None,
        values: Mapping[str, Any] | None,
        consent_text: str,
        ip: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> SubmitResult:
        now = now or utcnow()
        if not (token or "").strip():
            raise NotFoundError("Missing signing token")
        name = (signer_name or "").strip()
        if not name:
            raise ValidationFailedError("Signer name is required")
        if not (consent_text or "").strip():
            raise ValidationFailedError("Consent text is required")
        values = dict(values or {})

        request = self.tokens.resolve(token, now)
        self.authorizer.authorize(request)

        document = self._get_document(request)
        role = signer_role_of(request)
        fields = load_document_fields(self.session, document.id, request.revision)
        missing = missing_required_fields(fields, role, values)
        if missing:
            logger.info("Rejected submission for request %s: %s required fields missing", request.id, len(missing))
            raise ValidationFailedError(missing_field_ids=missing)
        if not self.session.get(StoredFile, document.source_file_id):
            raise PersistenceFailure(f"Source file missing for document {document.id}")

        envelope = ensure_envelope(self.session, scope_id(request), request, document)
        signer = SignerIdentity(
            name=name,
            email=(signer_email or "").strip() or None,
            ip=ip,
            user_agent=user_agent,
        )
        self.recorder.record(request, envelope.id, signer, values, consent_text, signer_role=role, now=now)
        return self._advance(envelope, document, request, now)

    def _advance(
        self,
        envelope: Envelope,
        document: Document,
        request: SigningRequest,
        now: datetime,
    ) -> SubmitResult:
        scope = load_scope_requests(self.session, request)
        snapshot = detect_completion(scope)
        executed_url: str | None = None

        if snapshot.all_required_signed:
            executed_url = self._execute(envelope, document, scope, request.created_by, now)
        else:
            written = apply_partial_status(self.session, envelope.id, snapshot, now)
            if written is not None:
                self._route_next(document, envelope.id, scope, now)

        self.session.refresh(envelope)
        return SubmitResult(success=True, executed_document_url=executed_url, envelope_status=envelope.status.value)

    # --------------------------------------------------------------- execution

    def _execute(
        self,
        envelope: Envelope,
        document: Document,
        scope: Sequence[SigningRequest],
        uploaded_by: UUID | None,
        now: datetime,
    ) -> str | None:
        envelope_id = envelope.id
        try:
            artifact = self.executor.execute(envelope, document, scope, uploaded_by=uploaded_by, now=now)
        except Exception:
            # the signature is already recorded; resume_envelope retries the rest
            logger.exception("Envelope %s could not be executed; it can be resumed", envelope_id)
            return None
        if artifact is None:
            return None

        execution = _Execution(
            executed_file_id=artifact.file.id,
            file_name=artifact.file_name,
            content=artifact.content,
            signer=self._latest_signer(scope),
            scope=scope,
        )
        return self._after_execution(document, envelope_id, execution)

    def _after_execution(self, document: Document, envelope_id: UUID, execution: _Execution) -> str:
        context = ExecutionContext(
            org_id=document.org_id,
            document_id=document.id,
            envelope_id=envelope_id,
            executed_file_id=execution.executed_file_id,
            signer_name=execution.signer.name,
            signer_email=execution.signer.email,
            signer_ip=execution.signer.ip,
        )
        try:
            self.dispatcher.dispatch(document, context)
        except Exception:
            self.session.rollback()
            logger.exception("Side effect dispatch failed for envelope %s", envelope_id)

        executed_url = self.executed_document_url(execution.executed_file_id)
        attachment = (
            EmailAttachment(filename=execution.file_name, content=execution.content, mime_type=PDF_MIME)
            if execution.content is not None
            else None
        )
        try:
            self.notifications.notify_envelope_executed(
                document=document,
                envelope_id=envelope_id,
                recipients=resolve_completion_recipients(document, execution.scope),
                executed_url=executed_url,
                attachment=attachment,
                ledger=self.ledger,
            )
        except Exception:
            self.session.rollback()
            logger.exception("Completion notifications failed for envelope %s", envelope_id)
        return executed_url

    def executed_document_url(self, executed_file_id: UUID) -> str:
        token = create_executed_file_token(
            executed_file_id, self.config.executed_link_ttl_minutes, self.config.signing_secret
        )
        base = (self.config.public_app_url or "").rstrip("/")
        return f"{base}/esign/executed/{token}"

    # ----------------------------------------------------------------- routing

    def _route_next(
        self,
        document: Document,
        envelope_id: UUID,
        scope: Sequence[SigningRequest],
        now: datetime,
    ) -> list[SigningRequest]:
        sendable = [
            request
            for request in next_signer_batch(scope)
            if request.status == SigningRequestStatus.DRAFT and request.sent_to_email
        ]
        issued: list[tuple[SigningRequest, str]] = []
        for request in sendable:
            token = self.tokens.rotate(request, now)
            if token:
                issued.append((request, token))
        if not issued:
            return []

        self.session.add(
            EnvelopeEvent(
                org_id=document.org_id,
                envelope_id=envelope_id,
                document_id=document.id,
                event_type=EnvelopeEventType.SENT.value,
                payload={"sent_now": len(issued), "trigger": "next_required_sequence"},
                created_at=now,
            )
        )
        self.session.commit()
        try:
            self.notifications.notify_signature_requests(document=document, envelope_id=envelope_id, issued=issued)
        except Exception:
            self.session.rollback()
            logger.exception("Next-signer notifications failed for envelope %s", envelope_id)
        return [request for request, _ in issued]

    # ------------------------------------------------------------------ resume

    def resume_envelope(self, envelope_id: UUID, now: datetime | None = None) -> SubmitResult:
        """Re-run whatever part of the pipeline an envelope still needs.

        Executes a completed envelope that has no artifact yet, re-attempts side
        effects and completion e-mails that never finished, or routes the next
        signer batch of a partially signed envelope.
        """
        now = now or utcnow()
        envelope = self.session.get(Envelope, envelope_id, populate_existing=True)
        if not envelope:
            raise NotFoundError("Envelope not found")
        document = self.session.get(Document, envelope.document_id, populate_existing=True)
        if not document:
            raise NotFoundError("Document not found")

        scope = self._envelope_requests(envelope)
        logger.info("Resuming envelope %s (status %s)", envelope.id, envelope.status.value)

        if envelope.status == EnvelopeStatus.EXECUTED or document.executed_file_id:
            executed_url = self._resume_executed(document, envelope, scope)
            return SubmitResult(success=True, executed_document_url=executed_url, envelope_status=envelope.status.value)
        if envelope.status in ENVELOPE_TERMINAL_STATUSES:
            return SubmitResult(success=False, envelope_status=envelope.status.value)

        snapshot = detect_completion(scope)
        executed_url = None
        if snapshot.all_required_signed:
            executed_url = self._execute(envelope, document, scope, envelope.created_by, now)
        else:
            written = apply_partial_status(self.session, envelope.id, snapshot, now)
            if written is not None:
                self._route_next(document, envelope.id, scope, now)
        self.session.refresh(envelope)
        return SubmitResult(
            success=executed_url is not None or not snapshot.all_required_signed,
            executed_document_url=executed_url,
            envelope_status=envelope.status.value,
        )

    def _resume_executed(self, document: Document, envelope: Envelope, scope: Sequence[SigningRequest]) -> str | None:
        if not document.executed_file_id:
            return None
        executed_file = self.session.get(StoredFile, document.executed_file_id)
        if not executed_file:
            raise PersistenceFailure(f"Executed file {document.executed_file_id} is missing")
        content: bytes | None
        try:
            content = self.storage.download_artifact(str(document.org_id), executed_file.storage_path)
        except StorageFailure as exc:
            logger.warning("Executed artifact unavailable for envelope %s: %s", envelope.id, exc)
            content = None
        execution = _Execution(
            executed_file_id=executed_file.id,
            file_name=executed_file.file_name,
            content=content,
            signer=self._latest_signer(scope),
            scope=scope,
        )
        return self._after_execution(document, envelope.id, execution)

    # ----------------------------------------------------------------- helpers

    def _get_document(self, request: SigningRequest) -> Document:
        document = self.session.get(Document, request.document_id)
        if not document:
            raise NotFoundError("Document not found")
        return document

    def _envelope_requests(self, envelope: Envelope) -> list[SigningRequest]:
        statement = (
            select(SigningRequest)
            .where(SigningRequest.org_id == envelope.org_id)
            .where(
                or_(
                    SigningRequest.envelope_id == envelope.id,
                    SigningRequest.group_id == envelope.id,
                    SigningRequest.id == envelope.id,
                )
            )
            .order_by(SigningRequest.sequence, SigningRequest.created_at)
            .execution_options(populate_existing=True)
        )
        return list(self.session.exec(statement).all())

    def _latest_signer(self, scope: Sequence[SigningRequest]) -> SignerIdentity:
        request_ids = [request.id for request in scope]
        signature = self.session.exec(
            select(Signature)
            .where(Signature.signing_request_id.in_(request_ids))
            .order_by(Signature.created_at.desc(), Signature.id.desc())
        ).first()
        if not signature:
            return SignerIdentity(name="")
        return SignerIdentity(
            name=signature.signer_name,
            email=signature.signer_email,
            ip=signature.signer_ip,
            user_agent=signature.user_agent,
        )
