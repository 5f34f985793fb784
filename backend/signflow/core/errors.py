"""Failure taxonomy of the signing workflow.

Every error is a ``ValueError`` so callers that already turn service ``ValueError``s
into HTTP 400 keep working; routes use ``status_code`` for a precise answer.
``retryable`` tells the signing UI whether the condition may change on its own
(for example a prior signer finishing), never whether to retry automatically.
"""

from __future__ import annotations


class SigningError(ValueError):
    status_code: int = 400
    retryable: bool = False
    default_message: str = "Signing request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(SigningError):
    status_code = 404
    default_message = "Signing request not found: Invalid link"


class ExpiredError(SigningError):
    status_code = 410
    default_message = "Signing link has expired"


class InvalidRequestError(SigningError):
    status_code = 410
    default_message = "Signing request is no longer valid"


class ExhaustedError(SigningError):
    status_code = 410
    default_message = "Signing link has already been used"


class OutOfOrderError(SigningError):
    status_code = 409
    retryable = True
    default_message = "This signer is not yet authorized to sign"


class ValidationFailedError(SigningError):
    status_code = 422
    retryable = True
    default_message = "Please complete all required fields"

    def __init__(self, message: str | None = None, *, missing_field_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing_field_ids = list(missing_field_ids or [])


class MisconfiguredError(SigningError):
    status_code = 500
    default_message = "Signing workflow is not configured"


class StorageFailure(SigningError):
    status_code = 503
    retryable = True
    default_message = "Storage is temporarily unavailable"


class PersistenceFailure(SigningError):
    status_code = 503
    retryable = True
    default_message = "Failed to persist signing data"


__all__ = [
    "SigningError",
    "NotFoundError",
    "ExpiredError",
    "InvalidRequestError",
    "ExhaustedError",
    "OutOfOrderError",
    "ValidationFailedError",
    "MisconfiguredError",
    "StorageFailure",
    "PersistenceFailure",
]
