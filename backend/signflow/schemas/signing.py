from datetime import datetime
from typing import Dict, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator

from signflow.schemas.common import IDModel

# Field values are either text (including image data URLs) or booleans for checkboxes.
FieldValue = Optional[Union[StrictBool, StrictStr]]


class FieldRead(IDModel):
    model_config = ConfigDict(from_attributes=True)

    page_index: int
    field_type: str
    label: str | None = None
    required: bool | None = True
    signer_role: str | None = None
    x: float
    y: float
    w: float
    h: float
    sort_order: int = 0


class SigningContextRead(BaseModel):
    document_id: UUID
    document_title: str
    revision: int
    signer_role: str | None
    sent_to_email: str | None
    sequence: int
    status: str
    expires_at: datetime | None
    can_sign: bool
    reason: str | None = None
    fields: List[FieldRead]
    required_field_ids: List[str]


class FieldCheckPayload(BaseModel):
    values: Dict[str, FieldValue] = Field(default_factory=dict)


class FieldCheckRead(BaseModel):
    complete: bool
    missing_field_ids: List[str]


class SubmitSignaturePayload(BaseModel):
    signer_name: str = Field(min_length=1, max_length=256)
    signer_email: Optional[str] = Field(default=None, max_length=320)
    values: Dict[str, FieldValue] = Field(default_factory=dict)
    consent_text: str = Field(min_length=1)

    @field_validator("signer_name", "consent_text")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned

    @field_validator("signer_email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class SubmitSignatureResponse(BaseModel):
    success: bool = True
    executed_document_url: str | None = None
    envelope_status: str | None = None
