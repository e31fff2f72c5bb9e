from __future__ import annotations

import base64
import hashlib
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from cryptography.fernet import Fernet, InvalidToken

from custodian.logging import get_logger
from custodian.storage.common import generate_id, normalize_email
from custodian.storage.errors import ConstraintViolation
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


class MemoryStore:
    """In-process credential store and risk-signal log for development and tests.

    Implements both ``CredentialStore`` and ``RiskSignalStore``. All mutations
    happen under one re-entrant lock and never await while holding it, so
    conditional updates (backup-code consumption, primary flag swaps) are
    atomic with respect to concurrently scheduled coroutines and threads.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._email_index: Dict[str, str] = {}
        self.mfa_methods: Dict[str, MFAMethod] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.mfa_attempts: List[MFAAttempt] = []
        self.device_usage: List[TrustedDeviceUsage] = []
        self.risk_events: List[RiskEvent] = []
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("MFA encryption key is required")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            # An undecryptable secret can never verify a code
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _public_method(self, stored: MFAMethod) -> MFAMethod:
        return replace(
            stored,
            secret=self._decrypt_mfa_secret(stored.secret),
            backup_code_hashes=list(stored.backup_code_hashes),
        )

    # -- principals -------------------------------------------------------

    def create_principal(
        self,
        email: str,
        credential_hash: str,
        *,
        status: PrincipalStatus = PrincipalStatus.ACTIVE,
        phone_number: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Principal:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=generate_id("usr"),
                email=normalized,
                credential_hash=credential_hash,
                status=status,
                phone_number=phone_number,
                created_at=created_at,
            )
            self.principals[principal.id] = principal
            self._email_index[normalized] = principal.id
            return replace(principal)

    async def find_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._email_index.get(normalize_email(email))
            principal = self.principals.get(principal_id) if principal_id else None
            return replace(principal) if principal else None

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    async def record_failed_attempt(
        self,
        principal_id: str,
        now: datetime,
        *,
        max_attempts: int,
        lockout_minutes: int,
    ) -> Principal:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            principal.failed_attempts += 1
            if principal.failed_attempts >= max_attempts:
                principal.locked_until = now + timedelta(minutes=lockout_minutes)
                self.logger.warning(
                    "principal_locked",
                    principal_id=principal_id,
                    failed_attempts=principal.failed_attempts,
                    locked_until=principal.locked_until.isoformat(),
                )
            return replace(principal)

    async def record_successful_attempt(
        self, principal_id: str, now: datetime, ip_addr: Optional[str] = None
    ) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return
            principal.failed_attempts = 0
            principal.locked_until = None
            principal.last_login_at = now
            principal.last_login_ip = ip_addr

    async def is_locked(self, principal_id: str, now: datetime) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return bool(principal and principal.is_locked(now))

    async def set_principal_status(
        self, principal_id: str, status: PrincipalStatus
    ) -> Principal:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            principal.status = status
            return replace(principal)

    # -- MFA methods ------------------------------------------------------

    async def list_mfa_methods(
        self, principal_id: str, *, include_disabled: bool = False
    ) -> List[MFAMethod]:
        with self._data_lock:
            methods = [
                self._public_method(m)
                for m in self.mfa_methods.values()
                if m.principal_id == principal_id and (include_disabled or m.enabled)
            ]
        return sorted(
            methods,
            key=lambda m: (not m.primary, m.created_at is None, m.created_at or datetime.min),
        )

    async def get_mfa_method(self, method_id: str) -> Optional[MFAMethod]:
        with self._data_lock:
            stored = self.mfa_methods.get(method_id)
            return self._public_method(stored) if stored else None

    async def add_mfa_method(self, method: MFAMethod) -> MFAMethod:
        with self._data_lock:
            if method.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for mfa", {"principal_id": method.principal_id}
                )
            if method.id in self.mfa_methods:
                raise ConstraintViolation("mfa method exists", {"method_id": method.id})
            stored = replace(
                method,
                secret=self._encrypt_mfa_secret(method.secret),
                backup_code_hashes=list(method.backup_code_hashes),
            )
            self.mfa_methods[method.id] = stored
            return self._public_method(stored)

    async def update_mfa_method(self, method_id: str, **fields: Any) -> MFAMethod:
        with self._data_lock:
            stored = self.mfa_methods.get(method_id)
            if stored is None:
                raise ConstraintViolation("mfa method not found", {"method_id": method_id})
            if "secret" in fields:
                fields["secret"] = self._encrypt_mfa_secret(fields["secret"])
            if fields.get("primary"):
                self._clear_primary(stored.principal_id)
            updated = replace(stored, **fields)
            self.mfa_methods[method_id] = updated
            return self._public_method(updated)

    def _clear_primary(self, principal_id: str) -> None:
        for method_id, method in self.mfa_methods.items():
            if method.principal_id == principal_id and method.primary:
                self.mfa_methods[method_id] = replace(method, primary=False)

    async def set_primary_mfa_method(self, principal_id: str, method_id: str) -> None:
        with self._data_lock:
            target = self.mfa_methods.get(method_id)
            if target is None or target.principal_id != principal_id or not target.enabled:
                raise ConstraintViolation("mfa method not eligible", {"method_id": method_id})
            self._clear_primary(principal_id)
            self.mfa_methods[method_id] = replace(self.mfa_methods[method_id], primary=True)

    async def record_mfa_use(self, method_id: str, now: datetime) -> None:
        with self._data_lock:
            stored = self.mfa_methods.get(method_id)
            if stored is None:
                return
            self.mfa_methods[method_id] = replace(
                stored, use_count=stored.use_count + 1, last_used_at=now
            )

    async def consume_backup_code(
        self, method_id: str, code_hash: str, now: datetime
    ) -> Optional[int]:
        """Remove ``code_hash`` if still present; return remaining codes or None."""
        with self._data_lock:
            stored = self.mfa_methods.get(method_id)
            if stored is None or not stored.enabled:
                return None
            if code_hash not in stored.backup_code_hashes:
                return None
            remaining = [h for h in stored.backup_code_hashes if h != code_hash]
            self.mfa_methods[method_id] = replace(
                stored,
                backup_code_hashes=remaining,
                use_count=stored.use_count + 1,
                last_used_at=now,
            )
            return len(remaining)

    # -- trusted devices --------------------------------------------------

    async def find_trusted_device(
        self, principal_id: str, fingerprint: str
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            candidates = [
                d
                for d in self.trusted_devices.values()
                if d.principal_id == principal_id
                and d.fingerprint == fingerprint
                and d.revoked_at is None
            ]
            if not candidates:
                return None
            newest = max(candidates, key=lambda d: d.created_at)
            return replace(newest)

    async def get_trusted_device(self, device_id: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            return replace(device) if device else None

    async def add_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            if device.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for device", {"principal_id": device.principal_id}
                )
            self.trusted_devices[device.id] = replace(device)
            return replace(device)

    async def list_trusted_devices(self, principal_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            devices = [
                replace(d) for d in self.trusted_devices.values() if d.principal_id == principal_id
            ]
        return sorted(devices, key=lambda d: d.created_at, reverse=True)

    async def record_trusted_device_use(self, device_id: str, now: datetime) -> None:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if device is None:
                return
            device.usage_count += 1
            device.last_used_at = now

    async def revoke_trusted_device(
        self, device_id: str, now: datetime, *, reason: str, revoked_by: str
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if device is None:
                return None
            if device.revoked_at is None:
                device.revoked_at = now
                device.revoked_reason = reason
                device.revoked_by = revoked_by
            return replace(device)

    # -- risk signals -----------------------------------------------------

    async def append_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)

    async def append_mfa_attempt(self, attempt: MFAAttempt) -> None:
        with self._data_lock:
            self.mfa_attempts.append(attempt)

    async def append_device_usage(self, usage: TrustedDeviceUsage) -> None:
        with self._data_lock:
            self.device_usage.append(usage)

    async def append_risk_event(self, event: RiskEvent) -> None:
        with self._data_lock:
            self.risk_events.append(event)

    async def count_failed_attempts(
        self,
        since: datetime,
        *,
        ip_addr: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            logins = sum(
                1
                for a in self.login_attempts
                if not a.success
                and a.created_at >= since
                and (ip_addr is None or a.ip_addr == ip_addr)
                and (principal_id is None or a.principal_id == principal_id)
            )
            mfa = sum(
                1
                for a in self.mfa_attempts
                if not a.success
                and a.created_at >= since
                and (ip_addr is None or a.ip_addr == ip_addr)
                and (principal_id is None or a.principal_id == principal_id)
            )
        return logins + mfa

    async def count_failed_mfa_attempts(
        self, principal_id: str, since: datetime, *, ip_addr: Optional[str] = None
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.mfa_attempts
                if not a.success
                and a.principal_id == principal_id
                and a.created_at >= since
                and (ip_addr is None or a.ip_addr == ip_addr)
            )

    async def count_risk_events(self, ip_addr: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1 for e in self.risk_events if e.ip_addr == ip_addr and e.created_at >= since
            )

    async def count_distinct_principals(self, ip_addr: str, since: datetime) -> int:
        with self._data_lock:
            return len(
                {
                    a.principal_id
                    for a in self.login_attempts
                    if a.ip_addr == ip_addr and a.created_at >= since and a.principal_id
                }
            )

    async def known_ips(self, principal_id: str, since: datetime) -> Set[str]:
        with self._data_lock:
            return {
                a.ip_addr
                for a in self.login_attempts
                if a.success
                and a.principal_id == principal_id
                and a.created_at >= since
                and a.ip_addr
            }

    async def device_ips(self, device_id: str, since: datetime) -> Set[str]:
        with self._data_lock:
            return {
                u.ip_addr
                for u in self.device_usage
                if u.device_id == device_id and u.created_at >= since and u.ip_addr
            }

    async def last_device_usage(self, device_id: str) -> Optional[datetime]:
        with self._data_lock:
            stamps = [u.created_at for u in self.device_usage if u.device_id == device_id]
        return max(stamps) if stamps else None

    async def list_risk_events(self, principal_id: str, since: datetime) -> List[RiskEvent]:
        with self._data_lock:
            return [
                e
                for e in self.risk_events
                if e.principal_id == principal_id and e.created_at >= since
            ]


__all__ = ["MemoryStore"]
