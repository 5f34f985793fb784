from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from signflow.core.config import SigningConfig
from signflow.core.errors import PersistenceFailure
from signflow.models.base import as_utc, utcnow
from signflow.models.document import Document, DocumentField, DocumentStatus, FileVersion, StoredFile
from signflow.models.envelope import (
    ENVELOPE_TERMINAL_STATUSES,
    Envelope,
    EnvelopeEvent,
    EnvelopeEventType,
    EnvelopeStatus,
    Signature,
    SigningRequest,
)
from signflow.services.completion import merge_signature_values
from signflow.services.rendering import PdfStampRenderer
from signflow.services.storage import StorageBackend, build_org_scoped_path

logger = logging.getLogger("signflow.executor")

PDF_MIME = "application/pdf"


@dataclass(frozen=True)
class ExecutedArtifact:
    file: StoredFile
    file_name: str
    content: bytes


def executed_file_name(title: str | None) -> str:
    safe_title = re.sub(r"[^a-zA-Z0-9.-]", "_", title or "")[:80]
    return f"{safe_title or 'document'}_executed.pdf"


def executed_artifact_path(document: Document, file_name: str, now: datetime) -> str:
    timestamp = int(as_utc(now).timestamp() * 1000)
    return build_org_scoped_path(
        str(document.org_id),
        "projects",
        document.project_id,
        "esign",
        document.id,
        "executed",
        f"{timestamp}_{file_name}",
    )


def load_document_fields(session: Session, document_id: UUID, revision: int) -> list[DocumentField]:
    statement = (
        select(DocumentField)
        .where(DocumentField.document_id == document_id)
        .where(DocumentField.revision == revision)
        .order_by(DocumentField.sort_order)
    )
    return list(session.exec(statement).all())


class DocumentExecutor:
    """Produces the executed artifact for an envelope whose required signers are done.

    Only the caller holding the envelope's execution claim renders and stores the
    artifact, and the final ``executed`` transition is conditional on still
    holding that claim.
    """

    def __init__(
        self,
        session: Session,
        storage: StorageBackend,
        config: SigningConfig,
        renderer: PdfStampRenderer | None = None,
    ) -> None:
        self.session = session
        self.storage = storage
        self.config = config
        self.renderer = renderer or PdfStampRenderer()

    def claim(self, envelope_id: UUID, now: datetime | None = None) -> UUID | None:
        now = now or utcnow()
        claim = uuid4()
        stale_before = now - timedelta(seconds=self.config.execution_claim_timeout_seconds)
        result = self.session.exec(
            update(Envelope)
            .where(Envelope.id == envelope_id)
            .where(Envelope.status.notin_(list(ENVELOPE_TERMINAL_STATUSES)))
            .where(or_(Envelope.execution_claim.is_(None), Envelope.execution_claimed_at < stale_before))
            .values(execution_claim=claim, execution_claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount != 1:
            logger.info("Envelope %s is already executed or being executed; skipping", envelope_id)
            return None
        return claim

    def release(self, envelope_id: UUID, claim: UUID) -> None:
        self.session.exec(
            update(Envelope)
            .where(Envelope.id == envelope_id)
            .where(Envelope.execution_claim == claim)
            .values(execution_claim=None, execution_claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def execute(
        self,
        envelope: Envelope,
        document: Document,
        scope_requests: Sequence[SigningRequest],
        uploaded_by: UUID | None = None,
        now: datetime | None = None,
    ) -> ExecutedArtifact | None:
        """Render, store and record the executed artifact.

        Returns ``None`` when another caller holds the claim or the envelope is
        already terminal. Any failure releases the claim, records an
        ``envelope_execution_failed`` event and re-raises.
        """
        now = now or utcnow()
        envelope_id = envelope.id
        claim = self.claim(envelope_id, now)
        if claim is None:
            return None

        try:
            artifact = self._execute_claimed(envelope, document, scope_requests, claim, uploaded_by, now)
        except Exception as exc:
            self.session.rollback()
            self.release(envelope_id, claim)
            self._record_failure(envelope_id, document, exc)
            raise
        logger.info("Envelope %s executed as file %s", envelope_id, artifact.file.id)
        return artifact

    def _execute_claimed(
        self,
        envelope: Envelope,
        document: Document,
        scope_requests: Sequence[SigningRequest],
        claim: UUID,
        uploaded_by: UUID | None,
        now: datetime,
    ) -> ExecutedArtifact:
        request_ids = [request.id for request in scope_requests]
        signatures = self.session.exec(
            select(Signature).where(Signature.signing_request_id.in_(request_ids))
        ).all()
        merged_values = merge_signature_values(list(signatures))

        source_file = self.session.get(StoredFile, document.source_file_id)
        if not source_file:
            raise PersistenceFailure(f"Source file missing for document {document.id}")
        fields = load_document_fields(self.session, document.id, envelope.document_revision)

        source_bytes = self.storage.download_artifact(str(document.org_id), source_file.storage_path)
        executed_bytes = self.renderer.render_executed(source_bytes, fields, merged_values)

        file_name = executed_file_name(document.title)
        path = executed_artifact_path(document, file_name, now)
        storage_path = self.storage.upload_artifact(
            str(document.org_id), path, executed_bytes, PDF_MIME, upsert=False
        )

        executed_file = self._commit_execution(
            envelope=envelope,
            document=document,
            claim=claim,
            storage_path=storage_path,
            file_name=file_name,
            size_bytes=len(executed_bytes),
            uploaded_by=uploaded_by or document.created_by,
            now=now,
        )
        return ExecutedArtifact(file=executed_file, file_name=file_name, content=executed_bytes)

    def _commit_execution(
        self,
        *,
        envelope: Envelope,
        document: Document,
        claim: UUID,
        storage_path: str,
        file_name: str,
        size_bytes: int,
        uploaded_by: UUID | None,
        now: datetime,
    ) -> StoredFile:
        envelope_id = envelope.id
        try:
            executed_file = StoredFile(
                org_id=document.org_id,
                project_id=document.project_id,
                file_name=file_name,
                storage_path=storage_path,
                mime_type=PDF_MIME,
                size_bytes=size_bytes,
                visibility="private",
                category="contracts",
                folder_path=f"/projects/{document.project_id}/esign/executed",
                source="generated",
                uploaded_by=uploaded_by,
                share_with_clients=False,
                share_with_subs=False,
                created_at=now,
            )
            self.session.add(executed_file)
            self.session.flush()

            version = FileVersion(
                org_id=document.org_id,
                file_id=executed_file.id,
                version_number=1,
                label="Executed",
                notes="Signed via client portal",
                storage_path=storage_path,
                file_name=file_name,
                mime_type=PDF_MIME,
                size_bytes=size_bytes,
                created_by=uploaded_by,
                created_at=now,
            )
            self.session.add(version)
            self.session.flush()
            executed_file.current_version_id = version.id
            self.session.add(executed_file)

            transitioned = self.session.exec(
                update(Envelope)
                .where(Envelope.id == envelope_id)
                .where(Envelope.execution_claim == claim)
                .where(Envelope.status.notin_(list(ENVELOPE_TERMINAL_STATUSES)))
                .values(
                    status=EnvelopeStatus.EXECUTED,
                    executed_at=now,
                    updated_at=now,
                    execution_claim=None,
                    execution_claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if transitioned.rowcount != 1:
                raise PersistenceFailure(f"Lost execution claim for envelope {envelope_id}")

            documented = self.session.exec(
                update(Document)
                .where(Document.id == document.id)
                .where(Document.executed_file_id.is_(None))
                .values(status=DocumentStatus.SIGNED, executed_file_id=executed_file.id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if documented.rowcount != 1:
                raise PersistenceFailure(f"Document {document.id} already has an executed file")

            self.session.add(
                EnvelopeEvent(
                    org_id=document.org_id,
                    envelope_id=envelope_id,
                    document_id=document.id,
                    event_type=EnvelopeEventType.EXECUTED.value,
                    payload={"executed_file_id": str(executed_file.id), "executed_at": now.isoformat()},
                    created_at=now,
                )
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure(f"Failed to record executed document: {exc}") from exc

        self.session.refresh(executed_file)
        self.session.refresh(envelope)
        self.session.refresh(document)
        return executed_file

    def _record_failure(self, envelope_id: UUID, document: Document, exc: Exception) -> None:
        logger.error("Execution of envelope %s failed: %s", envelope_id, exc)
        try:
            self.session.add(
                EnvelopeEvent(
                    org_id=document.org_id,
                    envelope_id=envelope_id,
                    document_id=document.id,
                    event_type=EnvelopeEventType.EXECUTION_FAILED.value,
                    payload={"error": str(exc)[:500], "error_type": type(exc).__name__},
                )
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Could not record execution failure for envelope %s", envelope_id)
