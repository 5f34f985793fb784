from typing import Annotated

from fastapi import Depends, HTTPException
from sqlmodel import Session

from signflow.core.config import SigningConfig, settings
from signflow.core.errors import SigningError
from signflow.db.session import get_session
from signflow.services.audit import AuditService
from signflow.services.notification import NotificationService
from signflow.services.signing import EnvelopeSigningService
from signflow.services.storage import StorageBackend, get_storage


def get_db() -> Session:
    yield from get_session()


def get_signing_config() -> SigningConfig:
    try:
        return SigningConfig.from_settings(settings)
    except SigningError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


def get_storage_backend() -> StorageBackend:
    try:
        return get_storage(settings)
    except SigningError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


def get_signing_service(
    session: Annotated[Session, Depends(get_db)],
    config: Annotated[SigningConfig, Depends(get_signing_config)],
    storage: Annotated[StorageBackend, Depends(get_storage_backend)],
) -> EnvelopeSigningService:
    notification_service = NotificationService(
        AuditService(session),
        public_app_url=config.public_app_url,
        max_workers=config.notification_max_workers,
    )
    notification_service.apply_email_settings(settings)
    try:
        return EnvelopeSigningService(session, config, storage, notification_service=notification_service)
    except SigningError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
