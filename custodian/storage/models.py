from __future__ import annotations

import secrets
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class PrincipalStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class MFAMethodType(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    BACKUP_CODES = "backup_codes"


class StepUpVia(str, Enum):
    """How a session satisfied step-up authentication."""

    EXPLICIT = "explicit"
    TRUSTED_DEVICE = "trusted_device"


class TrustLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskEventType(str, Enum):
    LOGIN = "login"
    FAILED_AUTH = "failed_auth"
    MFA_SETUP = "mfa_setup"
    MFA_VERIFY = "mfa_verify"
    PASSWORD_CHANGE = "password_change"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT = "rate_limit"
    TOKEN_REUSE = "token_reuse"
    TRUSTED_DEVICE = "trusted_device"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskAction(str, Enum):
    ALLOW = "allow"
    STEP_UP = "step_up"
    THROTTLE = "throttle"
    BLOCK = "block"


def _parse_dt(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(raw)


@dataclass
class Principal:
    id: str
    email: str
    credential_hash: str
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    phone_number: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    id: str
    principal_id: str
    family_id: str
    created_at: datetime
    last_access_at: datetime
    expires_at: datetime
    absolute_expires_at: datetime
    device_fingerprint: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    scope: List[str] = field(default_factory=list)
    mfa_required: bool = False
    mfa_verified: bool = False
    mfa_verified_at: Optional[datetime] = None
    mfa_via: Optional[StepUpVia] = None
    suspicious: bool = False
    risk_score: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def generate_id(now: datetime) -> str:
        # Base-36 millisecond prefix keeps ids roughly sortable by creation
        millis = int(now.timestamp() * 1000)
        digits = "0123456789abcdefghijklmnopqrstuvwxyz"
        prefix = ""
        while millis:
            millis, rem = divmod(millis, 36)
            prefix = digits[rem] + prefix
        return f"sess_{prefix or '0'}_{secrets.token_hex(16)}"

    @classmethod
    def new(
        cls,
        principal_id: str,
        now: datetime,
        *,
        idle_ttl_minutes: int,
        absolute_ttl_minutes: int,
        device_fingerprint: str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        scope: List[str] | None = None,
        mfa_required: bool = False,
        risk_score: int = 0,
        suspicious: bool = False,
        meta: Dict | None = None,
    ) -> "Session":
        absolute = now + timedelta(minutes=absolute_ttl_minutes)
        return cls(
            id=cls.generate_id(now),
            principal_id=principal_id,
            family_id=f"fam_{uuid.uuid4().hex}",
            created_at=now,
            last_access_at=now,
            expires_at=min(now + timedelta(minutes=idle_ttl_minutes), absolute),
            absolute_expires_at=absolute,
            device_fingerprint=device_fingerprint,
            ip_addr=ip_addr,
            user_agent=user_agent,
            scope=list(scope or []),
            mfa_required=mfa_required,
            risk_score=risk_score,
            suspicious=suspicious,
            meta=dict(meta or {}),
        )

    @property
    def step_up_pending(self) -> bool:
        return self.mfa_required and not self.mfa_verified

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in (
            "created_at",
            "last_access_at",
            "expires_at",
            "absolute_expires_at",
            "mfa_verified_at",
        ):
            if payload[key] is not None:
                payload[key] = payload[key].isoformat()
        if self.mfa_via is not None:
            payload["mfa_via"] = self.mfa_via.value
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Session":
        data = dict(payload)
        for key in (
            "created_at",
            "last_access_at",
            "expires_at",
            "absolute_expires_at",
            "mfa_verified_at",
        ):
            data[key] = _parse_dt(data.get(key))
        if data.get("mfa_via"):
            data["mfa_via"] = StepUpVia(data["mfa_via"])
        return cls(**data)


@dataclass
class MFAMethod:
    id: str
    principal_id: str
    method: MFAMethodType
    enabled: bool = False
    primary: bool = False
    # Fernet ciphertext at rest; plaintext only on records handed to services
    secret: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    use_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None
    disabled_reason: Optional[str] = None

    @property
    def remaining_backup_codes(self) -> int:
        return len(self.backup_code_hashes)


@dataclass(frozen=True)
class MFAAttempt:
    id: str
    principal_id: str
    method_id: Optional[str]
    method: Optional[MFAMethodType]
    code_hash: Optional[str]
    success: bool
    failure_reason: Optional[str]
    ip_addr: Optional[str]
    user_agent: Optional[str]
    device_fingerprint: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class LoginAttempt:
    principal_id: Optional[str]
    email: str
    ip_addr: Optional[str]
    user_agent: Optional[str]
    success: bool
    failure_reason: Optional[str]
    created_at: datetime


@dataclass
class TrustedDevice:
    id: str
    principal_id: str
    fingerprint: str
    name: str
    expires_at: datetime
    created_at: datetime
    trust_level: TrustLevel = TrustLevel.MEDIUM
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoked_reason: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass(frozen=True)
class TrustedDeviceUsage:
    device_id: str
    principal_id: str
    ip_addr: Optional[str]
    user_agent: Optional[str]
    session_id: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class RiskEvent:
    id: str
    type: RiskEventType
    principal_id: Optional[str]
    ip_addr: Optional[str]
    user_agent: Optional[str]
    score: int
    blocked: bool
    created_at: datetime
    factors: tuple = ()
    details: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def new_id() -> str:
        return f"rev_{int(time.time() * 1000):x}_{secrets.token_hex(6)}"
