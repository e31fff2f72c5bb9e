"""Storage contracts shared by the services and the backends that implement them.

The credential store and the risk-signal log are owned by the platform's
relational database; the session cache is owned by this core. Services only
ever talk to these protocols.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from custodian.storage.models import (
    LoginAttempt,
    MFAAttempt,
    MFAMethod,
    Principal,
    PrincipalStatus,
    RiskEvent,
    TrustedDevice,
    TrustedDeviceUsage,
)

# Outcomes of a family pointer compare-and-swap
SWAP_OK = "ok"
SWAP_MISMATCH = "mismatch"
SWAP_MISSING = "missing"
SWAP_REVOKED = "revoked"


def hash_secret(value: str) -> str:
    """Stable SHA-256 digest used for refresh tokens, backup codes and OTPs."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialStore(Protocol):
    async def find_principal_by_email(self, email: str) -> Optional[Principal]: ...

    async def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    async def record_failed_attempt(
        self,
        principal_id: str,
        now: datetime,
        *,
        max_attempts: int,
        lockout_minutes: int,
    ) -> Principal: ...

    async def record_successful_attempt(
        self, principal_id: str, now: datetime, ip_addr: Optional[str] = None
    ) -> None: ...

    async def is_locked(self, principal_id: str, now: datetime) -> bool: ...

    async def set_principal_status(
        self, principal_id: str, status: PrincipalStatus
    ) -> Principal: ...

    async def list_mfa_methods(
        self, principal_id: str, *, include_disabled: bool = False
    ) -> List[MFAMethod]: ...

    async def get_mfa_method(self, method_id: str) -> Optional[MFAMethod]: ...

    async def add_mfa_method(self, method: MFAMethod) -> MFAMethod: ...

    async def update_mfa_method(self, method_id: str, **fields: Any) -> MFAMethod: ...

    async def set_primary_mfa_method(self, principal_id: str, method_id: str) -> None: ...

    async def record_mfa_use(self, method_id: str, now: datetime) -> None: ...

    async def consume_backup_code(
        self, method_id: str, code_hash: str, now: datetime
    ) -> Optional[int]: ...

    async def find_trusted_device(
        self, principal_id: str, fingerprint: str
    ) -> Optional[TrustedDevice]: ...

    async def get_trusted_device(self, device_id: str) -> Optional[TrustedDevice]: ...

    async def add_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    async def list_trusted_devices(self, principal_id: str) -> List[TrustedDevice]: ...

    async def record_trusted_device_use(self, device_id: str, now: datetime) -> None: ...

    async def revoke_trusted_device(
        self, device_id: str, now: datetime, *, reason: str, revoked_by: str
    ) -> Optional[TrustedDevice]: ...


class RiskSignalStore(Protocol):
    async def append_login_attempt(self, attempt: LoginAttempt) -> None: ...

    async def append_mfa_attempt(self, attempt: MFAAttempt) -> None: ...

    async def append_device_usage(self, usage: TrustedDeviceUsage) -> None: ...

    async def append_risk_event(self, event: RiskEvent) -> None: ...

    async def count_failed_attempts(
        self,
        since: datetime,
        *,
        ip_addr: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> int: ...

    async def count_failed_mfa_attempts(
        self, principal_id: str, since: datetime, *, ip_addr: Optional[str] = None
    ) -> int: ...

    async def count_risk_events(self, ip_addr: str, since: datetime) -> int: ...

    async def count_distinct_principals(self, ip_addr: str, since: datetime) -> int: ...

    async def known_ips(self, principal_id: str, since: datetime) -> Set[str]: ...

    async def device_ips(self, device_id: str, since: datetime) -> Set[str]: ...

    async def last_device_usage(self, device_id: str) -> Optional[datetime]: ...

    async def list_risk_events(
        self, principal_id: str, since: datetime
    ) -> List[RiskEvent]: ...


class SessionCache(Protocol):
    """Hot, TTL-bound state owned by the core: session blobs and token families."""

    async def put_session(
        self, session_id: str, blob: str, ttl_seconds: int, *, existing_only: bool = False
    ) -> bool:
        """Store ``blob``; with ``existing_only`` a deleted session is never recreated."""
        ...

    async def get_session(self, session_id: str) -> Optional[str]: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def index_session(
        self, principal_id: str, session_id: str, last_access: float, ttl_seconds: int
    ) -> None: ...

    async def indexed_sessions(self, principal_id: str) -> List[Tuple[str, float]]: ...

    async def unindex_session(self, principal_id: str, session_id: str) -> None: ...

    async def set_family(
        self,
        family_id: str,
        refresh_hash: str,
        access_jti: str,
        access_exp: int,
        ttl_seconds: int,
    ) -> None: ...

    async def swap_family(
        self,
        family_id: str,
        expected_hash: str,
        new_hash: str,
        access_jti: str,
        access_exp: int,
        ttl_seconds: int,
    ) -> str: ...

    async def get_family(self, family_id: str) -> Optional[Dict[str, str]]: ...

    async def revoke_family(
        self, family_id: str, reason: str, ttl_seconds: int
    ) -> Optional[Dict[str, str]]: ...

    async def family_revocation(self, family_id: str) -> Optional[str]: ...

    async def denylist(self, jti: str, ttl_seconds: int) -> None: ...

    async def access_revoked(self, jti: str, family_id: str) -> bool: ...

    async def reserve_hit(
        self, key: str, now: float, window_seconds: int, limit: int
    ) -> Tuple[bool, int, Optional[float]]:
        """Atomically add a hit unless ``limit`` hits are already in the window.

        Returns ``(admitted, count, oldest)``; ``oldest`` is only set on refusal.
        """
        ...

    async def clear_hits(self, key: str) -> None: ...

    async def claim(self, key: str, ttl_seconds: int) -> bool: ...

    async def put_value(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def take_value(self, key: str) -> Optional[str]: ...

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def set_json(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None: ...

    async def close(self) -> None: ...


__all__ = [
    "CredentialStore",
    "RiskSignalStore",
    "SessionCache",
    "SWAP_OK",
    "SWAP_MISMATCH",
    "SWAP_MISSING",
    "SWAP_REVOKED",
    "generate_id",
    "hash_secret",
    "normalize_email",
]
