from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request

from signflow.api.deps import get_signing_service
from signflow.core.errors import SigningError, ValidationFailedError
from signflow.schemas.signing import (
    FieldCheckPayload,
    FieldCheckRead,
    FieldRead,
    SigningContextRead,
    SubmitSignaturePayload,
    SubmitSignatureResponse,
)
from signflow.services.signing import EnvelopeSigningService

router = APIRouter(prefix="/public/esign", tags=["public-esign"])

SigningServiceDep = Annotated[EnvelopeSigningService, Depends(get_signing_service)]


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def _http_error(exc: SigningError) -> HTTPException:
    if isinstance(exc, ValidationFailedError) and exc.missing_field_ids:
        return HTTPException(
            status_code=exc.status_code,
            detail={"message": str(exc), "missing_field_ids": exc.missing_field_ids},
        )
    return HTTPException(status_code=exc.status_code, detail=str(exc))


@router.get("/{token}", response_model=SigningContextRead)
def get_signing_context(token: str, service: SigningServiceDep) -> SigningContextRead:
    try:
        context = service.get_signing_context(token)
    except SigningError as exc:
        raise _http_error(exc) from exc

    request = context.request
    return SigningContextRead(
        document_id=context.document.id,
        document_title=context.document.title,
        revision=request.revision,
        signer_role=context.signer_role,
        sent_to_email=request.sent_to_email,
        sequence=request.sequence if request.sequence is not None else 1,
        status=request.status.value,
        expires_at=request.expires_at,
        can_sign=context.can_sign,
        reason=context.reason,
        fields=[FieldRead.model_validate(field) for field in context.fields],
        required_field_ids=context.required_field_ids,
    )


@router.post("/{token}/check", response_model=FieldCheckRead)
def check_fields(token: str, payload: FieldCheckPayload, service: SigningServiceDep) -> FieldCheckRead:
    try:
        missing = service.check_fields(token, payload.values)
    except SigningError as exc:
        raise _http_error(exc) from exc
    return FieldCheckRead(complete=not missing, missing_field_ids=missing)


@router.post("/{token}/submit", response_model=SubmitSignatureResponse)
def submit_signature(
    token: str,
    payload: SubmitSignaturePayload,
    request: Request,
    service: SigningServiceDep,
) -> SubmitSignatureResponse:
    try:
        result = service.submit(
            token,
            signer_name=payload.signer_name,
            signer_email=payload.signer_email,
            values=payload.values,
            consent_text=payload.consent_text,
            ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except SigningError as exc:
        raise _http_error(exc) from exc
    return SubmitSignatureResponse(
        success=result.success,
        executed_document_url=result.executed_document_url,
        envelope_status=result.envelope_status,
    )
