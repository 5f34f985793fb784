from enum import Enum
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship

from signflow.models.base import OrgScopedModel, TimestampedModel, UUIDModel


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    SIGNED = "signed"
    VOIDED = "voided"
    EXPIRED = "expired"


class FieldType(str, Enum):
    SIGNATURE = "signature"
    INITIALS = "initials"
    TEXT = "text"
    DATE = "date"
    CHECKBOX = "checkbox"
    NAME = "name"


class StoredFile(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    __tablename__ = "files"

    project_id: UUID | None = Field(default=None, index=True)
    file_name: str = Field(max_length=255)
    storage_path: str
    mime_type: str = Field(default="application/pdf", max_length=128)
    size_bytes: int = Field(default=0)
    visibility: str = Field(default="private", max_length=32)
    category: str | None = Field(default=None, max_length=64)
    folder_path: str | None = Field(default=None)
    source: str = Field(default="upload", max_length=32)
    uploaded_by: UUID | None = Field(default=None)
    share_with_clients: bool = Field(default=False)
    share_with_subs: bool = Field(default=False)
    current_version_id: UUID | None = Field(default=None)

    versions: List["FileVersion"] = Relationship(back_populates="file")


class FileVersion(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    __tablename__ = "doc_versions"

    file_id: UUID = Field(foreign_key="files.id", index=True)
    version_number: int = Field(default=1, ge=1)
    label: str | None = Field(default=None, max_length=128)
    notes: str | None = Field(default=None)
    storage_path: str
    file_name: str = Field(max_length=255)
    mime_type: str = Field(default="application/pdf", max_length=128)
    size_bytes: int = Field(default=0)
    created_by: UUID | None = Field(default=None)

    file: StoredFile = Relationship(back_populates="versions")


class Document(UUIDModel, OrgScopedModel, TimestampedModel, table=True):
    __tablename__ = "documents"

    project_id: UUID = Field(index=True)
    title: str = Field(max_length=255)
    document_type: str | None = Field(default=None, max_length=64)
    status: DocumentStatus = Field(default=DocumentStatus.DRAFT)
    current_revision: int = Field(default=1, ge=1)
    source_file_id: UUID = Field(foreign_key="files.id")
    executed_file_id: UUID | None = Field(default=None, foreign_key="files.id")
    source_entity_type: str | None = Field(default=None, max_length=32)
    source_entity_id: UUID | None = Field(default=None, index=True)
    created_by: UUID | None = Field(default=None)
    # "metadata" is reserved on declarative models.
    metadata_json: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False, default=dict),
    )

    fields: List["DocumentField"] = Relationship(back_populates="document")


class DocumentField(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "document_fields"

    document_id: UUID = Field(foreign_key="documents.id", index=True)
    revision: int = Field(default=1, ge=1, index=True)
    page_index: int = Field(default=0, ge=0)
    field_type: str = Field(default=FieldType.SIGNATURE.value, max_length=32)
    label: str | None = Field(default=None, max_length=128)
    required: Optional[bool] = Field(default=True)
    signer_role: str | None = Field(default=None, max_length=64)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    w: float = Field(gt=0.0, le=1.0)
    h: float = Field(gt=0.0, le=1.0)
    sort_order: int = Field(default=0)

    document: Document = Relationship(back_populates="fields")


def document_metadata(document: Document) -> dict[str, Any]:
    raw = getattr(document, "metadata_json", None)
    return raw if isinstance(raw, dict) else {}
