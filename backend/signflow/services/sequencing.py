from __future__ import annotations

import logging
from typing import Iterable, Sequence
from uuid import UUID

from sqlmodel import Session, select

from signflow.core.errors import OutOfOrderError
from signflow.models.base import as_utc
from signflow.models.envelope import REQUEST_CLOSED_STATUSES, SigningRequest, SigningRequestStatus

logger = logging.getLogger("signflow.signing")


def _sequence(request: SigningRequest) -> int:
    return request.sequence if request.sequence is not None else 1


def scope_id(request: SigningRequest) -> UUID:
    """Envelope key of a request: explicit envelope, legacy group, or the request itself."""
    return request.envelope_id or request.group_id or request.id


def load_scope_requests(session: Session, request: SigningRequest) -> list[SigningRequest]:
    query = select(SigningRequest).where(SigningRequest.org_id == request.org_id)
    if request.envelope_id:
        query = query.where(SigningRequest.envelope_id == request.envelope_id)
    elif request.group_id:
        query = query.where(SigningRequest.group_id == request.group_id)
    else:
        query = query.where(SigningRequest.id == request.id)
    # populate_existing: overwrite identity-map state loaded before this read
    query = query.order_by(SigningRequest.sequence, SigningRequest.created_at).execution_options(
        populate_existing=True
    )
    return list(session.exec(query).all())


def pending_prior_signers(
    requests: Iterable[SigningRequest],
    current: SigningRequest,
) -> list[SigningRequest]:
    sequence = _sequence(current)
    return [
        request
        for request in requests
        if request.id != current.id
        and _sequence(request) < sequence
        and request.required is not False
        and request.status != SigningRequestStatus.SIGNED
    ]


def next_signer_batch(requests: Sequence[SigningRequest]) -> list[SigningRequest]:
    """All remaining required requests at the lowest pending sequence."""
    remaining = [
        request
        for request in requests
        if request.required is not False and request.status not in REQUEST_CLOSED_STATUSES
    ]
    if not remaining:
        return []
    next_sequence = min(_sequence(request) for request in remaining)
    return sorted(
        (request for request in remaining if _sequence(request) == next_sequence),
        key=lambda request: as_utc(request.created_at),
    )


class SequenceAuthorizer:
    def __init__(self, session: Session) -> None:
        self.session = session

    def authorize(self, request: SigningRequest) -> list[SigningRequest]:
        """Raise ``OutOfOrderError`` while a lower-sequence required signer is pending.

        Returns the scope requests that were read, for callers that need them.
        """
        scope = load_scope_requests(self.session, request)
        pending = pending_prior_signers(scope, request)
        if pending:
            logger.info(
                "Rejected out-of-order signature for request %s (sequence %s, %s prior pending)",
                request.id,
                _sequence(request),
                len(pending),
            )
            raise OutOfOrderError()
        return scope
