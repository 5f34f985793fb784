from __future__ import annotations

import io
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

os.environ.setdefault("SIGNFLOW_LOG_DIR", os.path.join(tempfile.gettempdir(), "signflow-test-logs"))

import pytest
from fastapi.testclient import TestClient
from reportlab.lib.pagesizes import LETTER
from reportlab.pdfgen import canvas
from sqlmodel import Session, SQLModel, create_engine

import signflow.db.base  # noqa: F401  registers the tables
from signflow.api import deps
from signflow.core.config import SigningConfig
from signflow.db import session as db_session_module
from signflow.main import app
from signflow.models.document import Document, DocumentField, StoredFile
from signflow.models.envelope import Envelope, EnvelopeStatus, SigningRequest, SigningRequestStatus
from signflow.services.audit import AuditService
from signflow.services.notification import NotificationService
from signflow.services.signing import EnvelopeSigningService
from signflow.services.storage import LocalStorage
from signflow.utils.security import generate_signing_token, hash_signing_token

TEST_SIGNING_SECRET = "test-signing-secret"
TEST_APP_URL = "https://app.example.com"


class FakeSMTP:
    def __init__(self, host, port, timeout=None):  # noqa: D401
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent_messages = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, message):
        self.sent_messages.append(message)


class RecordingActions:
    def __init__(self):
        self.calls: list[tuple[str, str, Any]] = []

    def accept_proposal(self, proposal_id, context):
        self.calls.append(("proposal", proposal_id, context))

    def approve_change_order(self, change_order_id, context):
        self.calls.append(("change_order", change_order_id, context))

    def confirm_selection(self, selection_id, context):
        self.calls.append(("selection", selection_id, context))


@dataclass
class SeededEnvelope:
    document: Document
    envelope: Envelope | None
    source_file: StoredFile
    requests: list[SigningRequest]
    tokens: list[str]
    fields: list[DocumentField] = field(default_factory=list)


def build_pdf(pages: int = 1) -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=LETTER)
    for index in range(pages):
        c.drawString(72, 720, f"Agreement page {index + 1}")
        c.showPage()
    c.save()
    return buffer.getvalue()


@pytest.fixture()
def db_engine(tmp_path):
    db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    def override_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[deps.get_db] = override_db

    yield engine

    app.dependency_overrides.pop(deps.get_db, None)
    db_session_module.engine = original_engine
    engine.dispose()


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


@pytest.fixture()
def signing_config() -> SigningConfig:
    return SigningConfig(
        signing_secret=TEST_SIGNING_SECRET,
        public_app_url=TEST_APP_URL,
        require_object_storage=False,
        notification_max_workers=4,
    )


@pytest.fixture()
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_dir=tmp_path / "storage")


@pytest.fixture()
def smtp_outbox(monkeypatch) -> list:
    import smtplib

    outbox: list = []

    def fake_smtp(host, port, timeout=None):
        fake = FakeSMTP(host, port, timeout=timeout)
        fake.sent_messages = outbox
        return fake

    monkeypatch.setattr(smtplib, "SMTP", fake_smtp)
    return outbox


@pytest.fixture()
def actions() -> RecordingActions:
    return RecordingActions()


def build_notifications(session: Session, config: SigningConfig) -> NotificationService:
    notifications = NotificationService(
        AuditService(session),
        public_app_url=config.public_app_url,
        max_workers=config.notification_max_workers,
    )
    notifications.configure_email(host="smtp.example.com", port=587, sender="noreply@example.com")
    return notifications


@pytest.fixture()
def make_service(signing_config, storage, smtp_outbox, actions):
    def factory(session: Session, config: SigningConfig | None = None, **kwargs) -> EnvelopeSigningService:
        config = config or signing_config
        kwargs.setdefault("notification_service", build_notifications(session, config))
        kwargs.setdefault("actions", actions)
        return EnvelopeSigningService(session, config, kwargs.pop("storage", storage), **kwargs)

    return factory


@pytest.fixture()
def client(db_engine, signing_config, storage, smtp_outbox, actions) -> TestClient:
    def override_service():
        with Session(db_engine) as session:
            yield EnvelopeSigningService(
                session,
                signing_config,
                storage,
                notification_service=build_notifications(session, signing_config),
                actions=actions,
            )

    app.dependency_overrides[deps.get_signing_service] = override_service
    app.dependency_overrides[deps.get_storage_backend] = lambda: storage
    app.dependency_overrides[deps.get_signing_config] = lambda: signing_config
    yield TestClient(app)
    app.dependency_overrides.pop(deps.get_signing_service, None)
    app.dependency_overrides.pop(deps.get_storage_backend, None)
    app.dependency_overrides.pop(deps.get_signing_config, None)


def seed_envelope(
    session: Session,
    storage: LocalStorage,
    *,
    signers: list[dict[str, Any]],
    fields: list[dict[str, Any]] | None = None,
    source_entity_type: str | None = None,
    source_entity_id: uuid.UUID | None = None,
    metadata: dict[str, Any] | None = None,
    with_envelope: bool = True,
    group_id: uuid.UUID | None = None,
    title: str = "Service Agreement",
    pages: int = 1,
) -> SeededEnvelope:
    """Document, source PDF, envelope and one signing request per ``signers`` entry.

    Signer keys: ``sequence``, ``required``, ``role``, ``email``, ``status``,
    ``expires_at``, ``used_count``, ``max_uses``.
    """
    org_id = uuid.uuid4()
    project_id = uuid.uuid4()
    pdf_bytes = build_pdf(pages)
    source_path = storage.upload_artifact(
        str(org_id), f"projects/{project_id}/source/{uuid.uuid4().hex}.pdf", pdf_bytes, "application/pdf"
    )
    source_file = StoredFile(
        org_id=org_id,
        project_id=project_id,
        file_name="agreement.pdf",
        storage_path=source_path,
        size_bytes=len(pdf_bytes),
    )
    session.add(source_file)
    session.flush()

    document = Document(
        org_id=org_id,
        project_id=project_id,
        title=title,
        source_file_id=source_file.id,
        source_entity_type=source_entity_type,
        source_entity_id=source_entity_id,
        metadata_json=metadata or {},
    )
    session.add(document)
    session.flush()

    created_fields: list[DocumentField] = []
    for index, layout in enumerate(fields or []):
        created = DocumentField(
            document_id=document.id,
            revision=1,
            page_index=layout.get("page_index", 0),
            field_type=layout.get("field_type", "signature"),
            label=layout.get("label"),
            required=layout.get("required", True),
            signer_role=layout.get("role"),
            x=layout.get("x", 0.1),
            y=layout.get("y", 0.1 + 0.1 * index),
            w=layout.get("w", 0.3),
            h=layout.get("h", 0.05),
            sort_order=index,
        )
        session.add(created)
        created_fields.append(created)

    envelope = None
    if with_envelope:
        envelope = Envelope(
            org_id=org_id,
            project_id=project_id,
            document_id=document.id,
            source_entity_type=source_entity_type,
            source_entity_id=source_entity_id,
            status=EnvelopeStatus.SENT,
            sent_at=datetime.now(timezone.utc),
        )
        session.add(envelope)
        session.flush()

    requests: list[SigningRequest] = []
    tokens: list[str] = []
    base_time = datetime.now(timezone.utc) - timedelta(minutes=5)
    for index, signer in enumerate(signers):
        token = generate_signing_token()
        request = SigningRequest(
            org_id=org_id,
            document_id=document.id,
            revision=1,
            envelope_id=envelope.id if envelope else None,
            group_id=group_id,
            sequence=signer.get("sequence", 1),
            required=signer.get("required", True),
            signer_role=signer.get("role"),
            sent_to_email=signer.get("email"),
            token_hash=hash_signing_token(token, TEST_SIGNING_SECRET),
            status=signer.get("status", SigningRequestStatus.SENT),
            expires_at=signer.get("expires_at"),
            used_count=signer.get("used_count", 0),
            max_uses=signer.get("max_uses", 1),
            created_at=base_time + timedelta(seconds=index),
        )
        session.add(request)
        requests.append(request)
        tokens.append(token)

    session.commit()
    for item in [document, source_file, *requests, *created_fields] + ([envelope] if envelope else []):
        session.refresh(item)
    return SeededEnvelope(
        document=document,
        envelope=envelope,
        source_file=source_file,
        requests=requests,
        tokens=tokens,
        fields=created_fields,
    )


SIGNATURE_DATA_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
)
