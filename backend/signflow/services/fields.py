"""Field applicability and completion rules.

The same predicate backs the UI pre-check endpoint and the authoritative
check performed before a signature is recorded.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence

from signflow.models.document import DocumentField, FieldType


def _normalize_role(role: str | None) -> str:
    return (role or "").strip().lower()


def visible_fields(fields: Iterable[DocumentField], signer_role: str | None) -> list[DocumentField]:
    role = _normalize_role(signer_role)
    visible = [
        field
        for field in fields
        if not _normalize_role(field.signer_role) or _normalize_role(field.signer_role) == role
    ]
    return sorted(visible, key=lambda field: (field.page_index, field.sort_order))


def required_fields(fields: Iterable[DocumentField], signer_role: str | None) -> list[DocumentField]:
    # "required" left unset counts as required
    return [field for field in visible_fields(fields, signer_role) if field.required is not False]


def is_field_complete(field_type: str, value: Any) -> bool:
    kind = (field_type or "").strip().lower()
    if kind == FieldType.CHECKBOX.value:
        return value is True
    if kind == FieldType.SIGNATURE.value:
        return isinstance(value, str) and len(value) > 0
    return isinstance(value, str) and len(value.strip()) > 0


def missing_required_fields(
    fields: Iterable[DocumentField],
    signer_role: str | None,
    values: Mapping[str, Any],
) -> list[str]:
    missing: list[str] = []
    for field in required_fields(fields, signer_role):
        field_id = str(field.id)
        if not is_field_complete(field.field_type, values.get(field_id)):
            missing.append(field_id)
    return missing


def all_required_complete(
    fields: Sequence[DocumentField],
    signer_role: str | None,
    values: Mapping[str, Any],
) -> bool:
    return not missing_required_fields(fields, signer_role, values)
