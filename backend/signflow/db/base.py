# noqa: F401 to ensure models are imported for metadata
from signflow.models.audit import AuditLog
from signflow.models.document import Document, DocumentField, FileVersion, StoredFile
from signflow.models.envelope import (
    Envelope,
    EnvelopeEffect,
    EnvelopeEvent,
    Signature,
    SigningRequest,
)

__all__ = [
    "AuditLog",
    "Document",
    "DocumentField",
    "FileVersion",
    "StoredFile",
    "Envelope",
    "EnvelopeEffect",
    "EnvelopeEvent",
    "Signature",
    "SigningRequest",
]
