from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update
from sqlmodel import Session, select

from signflow.core.config import SigningConfig
from signflow.core.errors import ExhaustedError, ExpiredError, InvalidRequestError, NotFoundError
from signflow.models.base import as_utc, utcnow
from signflow.models.envelope import SigningRequest, SigningRequestStatus
from signflow.utils.security import generate_signing_token, hash_signing_token

logger = logging.getLogger("signflow.signing")


class TokenResolver:
    """Maps bearer tokens to signing requests through their keyed hash.

    Resolution is read-only. Only :meth:`rotate` writes, and it does so with a
    guarded update so two callers can never hand out two live links for the
    same request.
    """

    def __init__(self, session: Session, config: SigningConfig) -> None:
        self.session = session
        self.config = config

    def hash(self, token: str) -> str:
        return hash_signing_token(token, self.config.signing_secret)

    def lookup(self, token: str) -> SigningRequest:
        normalized = (token or "").strip()
        if not normalized:
            raise NotFoundError()
        request = self.session.exec(
            select(SigningRequest).where(SigningRequest.token_hash == self.hash(normalized))
        ).first()
        if not request:
            raise NotFoundError()
        return request

    def resolve(self, token: str, now: datetime | None = None) -> SigningRequest:
        request = self.lookup(token)
        check_usable(request, now)
        return request

    def rotate(self, request: SigningRequest, now: datetime | None = None) -> str | None:
        """Issue a fresh link for a draft request and mark it sent.

        Returns the new raw token, or ``None`` when another caller already
        moved the request out of ``draft``.
        """
        now = now or utcnow()
        token = generate_signing_token()
        result = self.session.exec(
            update(SigningRequest)
            .where(SigningRequest.id == request.id)
            .where(SigningRequest.status == SigningRequestStatus.DRAFT)
            .values(
                token_hash=self.hash(token),
                status=SigningRequestStatus.SENT,
                sent_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount != 1:
            logger.info("Signing request %s was already routed; skipping token rotation", request.id)
            return None
        self.session.refresh(request)
        return token


def check_usable(request: SigningRequest, now: datetime | None = None) -> None:
    now = now or utcnow()
    if request.expires_at is not None and as_utc(request.expires_at) < as_utc(now):
        raise ExpiredError()
    if request.status in (SigningRequestStatus.VOIDED, SigningRequestStatus.EXPIRED):
        raise InvalidRequestError()
    if (request.used_count or 0) >= (request.max_uses or 1):
        raise ExhaustedError()
    # signed requests are immutable even when max_uses allows more
    if request.status == SigningRequestStatus.SIGNED:
        raise ExhaustedError()
