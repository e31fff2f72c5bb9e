from __future__ import annotations

from typing import Optional

GENERIC_AUTH_MESSAGE = "Authentication failed"


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries a transport-neutral ``status_code`` and a stable
    ``error_code``. ``message`` is safe to show to a caller; ``reason`` is the
    specific internal cause and only ever goes to audit logs.
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
        reason: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.reason = reason or self.error_code
        self.retry_after = retry_after


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    Subclasses default to the shared opaque message so that callers cannot
    tell which check rejected them.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = GENERIC_AUTH_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"


class AccountNotActive(AuthenticationError):
    error_code = "account_not_active"


class MFAVerificationFailed(AuthenticationError):
    error_code = "mfa_verification_failed"


class InvalidToken(AuthenticationError):
    error_code = "invalid_token"


class TokenExpired(AuthenticationError):
    error_code = "token_expired"


class TokenRevoked(AuthenticationError):
    error_code = "token_revoked"


class TokenFamilyCompromised(AuthenticationError):
    error_code = "token_family_compromised"


class SessionNotFound(AuthenticationError):
    error_code = "session_not_found"


class MFARequired(ServiceError):
    """Step-up authentication is needed before continuing (401)."""
    status_code = 401
    error_code = "mfa_required"

    def __init__(self, message: str = "Additional verification required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Too many failed sign-ins; ``retry_after`` carries the remaining seconds (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, message: str = "Account temporarily locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimited(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "Too many attempts, try again later", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SigningError(ServiceError):
    """Token signing material is unavailable (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "GENERIC_AUTH_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountNotActive",
    "AccountLocked",
    "MFARequired",
    "MFAVerificationFailed",
    "RateLimited",
    "InvalidToken",
    "TokenExpired",
    "TokenRevoked",
    "TokenFamilyCompromised",
    "SessionNotFound",
    "NotFoundError",
    "SigningError",
]
