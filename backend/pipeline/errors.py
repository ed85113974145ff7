"""
Commerce Error Taxonomy
=======================
Each error carries the HTTP status the API layer renders it with.
"""

from typing import Optional


class CommerceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.detail:
            body["detail"] = self.detail
        return body


class ValidationError(CommerceError):
    """Malformed or missing input."""

    status_code = 400
    code = "validation_error"


class AuthenticationError(CommerceError):
    """Missing or invalid bearer token."""

    status_code = 401
    code = "unauthenticated"


class NotFoundError(CommerceError):
    """Referenced entity or provider transaction does not exist."""

    status_code = 404
    code = "not_found"


class PreconditionError(CommerceError):
    """Lifecycle guard rejection; the message names the failed precondition."""

    status_code = 403
    code = "precondition_failed"


class ProviderError(CommerceError):
    """Remote provider or exchange-rate failure. The entity is left untouched."""

    status_code = 502
    code = "provider_error"

    def __init__(self, message: str, *, provider: Optional[str] = None, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)
        self.provider = provider


class SignatureError(CommerceError):
    """Webhook authenticity could not be verified."""

    status_code = 401
    code = "invalid_signature"


class AnomalyWarning(UserWarning):
    """Out-of-order, duplicate-conflicting or stale provider event.

    Never raised to callers: reconciliation records it on the result and the
    request is acknowledged.
    """
