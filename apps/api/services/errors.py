"""Typed licence/ledger errors mapped onto HTTP responses."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class LicenceError(HTTPException):
    """Business-rule failure carrying a stable machine-readable code."""

    status_code = 400
    error_code = "licence_error"

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(status_code=self.status_code, detail=detail)
        self.extra: Dict[str, Any] = extra

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error_code, "detail": self.detail}
        payload.update(self.extra)
        return payload


class AuthenticationRequired(LicenceError):
    status_code = 401
    error_code = "authentication_required"


class PermissionDenied(LicenceError):
    status_code = 403
    error_code = "permission_denied"


class FeatureDisabled(LicenceError):
    status_code = 403
    error_code = "feature_disabled"


class NotFound(LicenceError):
    status_code = 404
    error_code = "not_found"


class InvalidState(LicenceError):
    status_code = 409
    error_code = "invalid_state"


class DuplicatePendingRequest(LicenceError):
    status_code = 409
    error_code = "duplicate_pending_request"


class InsufficientCredits(LicenceError):
    status_code = 402
    error_code = "insufficient_credits"

    def __init__(self, required: int, available: int, detail: Optional[str] = None) -> None:
        super().__init__(
            detail or f"Insufficient credits. Required: {required}, available: {available}.",
            required=int(required),
            available=int(available),
        )
        self.required = int(required)
        self.available = int(available)


class ValidationError(LicenceError):
    status_code = 422
    error_code = "validation_error"


class ExpiryParseError(ValidationError):
    """Stored expiry string matches no known calendar format."""

    def __init__(self, value: Any) -> None:
        super().__init__(f"Unrecognised expiry date format: {value!r}", value=str(value))


class RateLimited(LicenceError):
    status_code = 429
    error_code = "rate_limited"


class InternalError(LicenceError):
    status_code = 500
    error_code = "internal_error"
