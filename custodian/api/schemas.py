from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from custodian.logging import get_logger
from custodian.service.auth import LoginResult, MaskedMethod, SessionSummary
from custodian.service.errors import (
    GENERIC_AUTH_MESSAGE,
    AuthenticationError,
    ServiceError,
)
from custodian.service.mfa import Challenge
from custodian.service.tokens import TokenPair
from custodian.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "mfa_required",
        "account_locked",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "unavailable",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def error_envelope(exc: Exception, request_id: Optional[str] = None) -> Tuple[int, Envelope]:
    """Translate a service or storage exception into ``(status_code, envelope)``.

    Authentication decisions all collapse to one code and message; the
    internal ``reason`` is logged here and never returned. Lockouts and rate
    limits expose ``retry_after`` only.
    """
    extra = {"request_id": request_id} if request_id else {}
    if isinstance(exc, AuthenticationError):
        status, code, message, details = 401, "unauthorized", GENERIC_AUTH_MESSAGE, None
    elif isinstance(exc, ServiceError):
        status, message = exc.status_code, exc.message
        code = exc.error_code if exc.error_code in _VALID_ERROR_CODES else "server_error"
        details = {"retry_after": exc.retry_after} if exc.retry_after is not None else None
    elif isinstance(exc, ConstraintViolation):
        status, code, message, details = 409, "conflict", exc.message, exc.detail
    elif isinstance(exc, StoreUnavailable):
        status, code, message, details = 503, "unavailable", "Service temporarily unavailable", None
    else:
        status, code, message, details = 500, "server_error", "Internal server error", None

    log_fn = logger.error if status >= 500 else logger.warning
    log_fn(
        "service_error",
        status_code=status,
        error_code=code,
        reason=getattr(exc, "reason", type(exc).__name__),
        **extra,
    )
    envelope = Envelope(status="error", error=ErrorBody(code=code, message=message, details=details), **extra)
    return status, envelope


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {chr(c) for c in range(0x2066, 0x206A)}
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("invalid email address length")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or any(len(l) > 63 or not _EMAIL_DOMAIN_LABEL.match(l) for l in labels):
        raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    remember_me: bool = False
    scope: List[str] = Field(default_factory=list, max_length=32)
    device_fingerprint: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MFAChallengeRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    method_id: Optional[str] = Field(default=None, max_length=128)


class MFAVerifyRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    code: str = Field(..., min_length=4, max_length=16)
    method_id: Optional[str] = Field(default=None, max_length=128)
    is_backup: bool = False
    trust_device: bool = False
    device_name: Optional[str] = Field(default=None, max_length=100)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    all_devices: bool = False


class MFAMethodInfo(BaseModel):
    id: str
    method: str
    primary: bool
    destination: Optional[str] = None

    @classmethod
    def from_masked(cls, masked: MaskedMethod) -> "MFAMethodInfo":
        return cls(
            id=masked.id,
            method=masked.method.value,
            primary=masked.primary,
            destination=masked.destination,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class AuthResponse(BaseModel):
    principal_id: str
    session_id: str
    session_expires_at: datetime
    mfa_required: bool = False
    methods: List[MFAMethodInfo] = Field(default_factory=list)
    tokens: Optional[TokenResponse] = None
    trusted_device_id: Optional[str] = None
    remaining_backup_codes: Optional[int] = None

    @classmethod
    def from_result(cls, result: LoginResult) -> "AuthResponse":
        return cls(
            principal_id=result.session.principal_id,
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
            mfa_required=result.mfa_required,
            methods=[MFAMethodInfo.from_masked(m) for m in result.methods],
            tokens=TokenResponse.from_pair(result.tokens) if result.tokens else None,
            trusted_device_id=result.trusted_device.id if result.trusted_device else None,
            remaining_backup_codes=result.remaining_backup_codes,
        )


class ChallengeResponse(BaseModel):
    reference: str
    method_id: str
    method: str
    destination: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_challenge(cls, challenge: Challenge) -> "ChallengeResponse":
        return cls(
            reference=challenge.reference,
            method_id=challenge.method_id,
            method=challenge.method.value,
            destination=challenge.destination,
            expires_at=challenge.expires_at,
        )


class SessionInfo(BaseModel):
    id: str
    created_at: datetime
    last_access_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    mfa_verified: bool = False
    current: bool = False

    @classmethod
    def from_summary(cls, summary: SessionSummary) -> "SessionInfo":
        return cls(
            id=summary.id,
            created_at=summary.created_at,
            last_access_at=summary.last_access_at,
            expires_at=summary.expires_at,
            ip_addr=summary.ip_addr,
            user_agent=summary.user_agent,
            mfa_verified=summary.mfa_verified,
            current=summary.current,
        )


__all__ = [
    "AuthResponse",
    "ChallengeResponse",
    "Envelope",
    "ErrorBody",
    "LoginRequest",
    "LogoutRequest",
    "MFAChallengeRequest",
    "MFAMethodInfo",
    "MFAVerifyRequest",
    "SessionInfo",
    "TokenRefreshRequest",
    "TokenResponse",
    "error_envelope",
]
