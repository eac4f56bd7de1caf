from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the response envelope:
    - unauthorized (401)
    - SESSION_REPLACED (401)
    - forbidden (403)
    - account_deactivated (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class CredentialInvalid(AuthenticationError):
    """Unknown username or wrong password; never says which."""
    pass


class TokenMissing(AuthenticationError):
    pass


class TokenMalformed(AuthenticationError):
    pass


class TokenExpired(AuthenticationError):
    pass


class IdentityNotFound(AuthenticationError):
    pass


class SessionSuperseded(AuthenticationError):
    """Token signature is valid but a newer session version exists (401)."""
    error_code = "SESSION_REPLACED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountDeactivated(ForbiddenError):
    """Account disabled by an administrator; needs admin action (403)."""
    error_code = "account_deactivated"


class IdentityDeactivated(AccountDeactivated):
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RecordNotFound(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class VersionConflict(ConflictError):
    """Write rejected because the base version is stale (409).

    ``latest`` is the authoritative record, rendered as ``latestData``.
    """

    def __init__(self, message: str, latest: dict[str, Any]) -> None:
        super().__init__(message, detail={"latestData": latest})
        self.latest = latest


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ScopeAllocationFailure(ServiceError):
    """Sequence counter store unavailable (503)."""
    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "CredentialInvalid",
    "TokenMissing",
    "TokenMalformed",
    "TokenExpired",
    "IdentityNotFound",
    "SessionSuperseded",
    "ForbiddenError",
    "AccountDeactivated",
    "IdentityDeactivated",
    "NotFoundError",
    "RecordNotFound",
    "ConflictError",
    "VersionConflict",
    "RateLimitedError",
    "ScopeAllocationFailure",
]
