"""Step-up authentication: methods, challenges and verification.

The flow a login goes through is modelled explicitly::

    unauthenticated -> primary_verified -> mfa_required -> mfa_challenged
                                                        -> mfa_verified -> authenticated
                                        -> mfa_bypassed -> authenticated
                                        -> authenticated   (no methods enrolled)

``next_state`` and ``step_up_required`` are pure so the orchestrator's
decisions can be tested without any store.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence
from urllib.parse import quote

from custodian.clock import Clock
from custodian.config import Settings
from custodian.logging import get_logger
from custodian.service.context import RequestContext
from custodian.service.errors import MFARequired, MFAVerificationFailed, RateLimited
from custodian.service.notifier import Notifier, OTPMessage
from custodian.service.risk import RiskEngine, RiskSignal
from custodian.service.sessions import SessionStore
from custodian.storage.common import (
    CredentialStore,
    RiskSignalStore,
    SessionCache,
    generate_id,
    hash_secret,
)
from custodian.storage.errors import ConstraintViolation
from custodian.storage.models import (
    MFAAttempt,
    MFAMethod,
    MFAMethodType,
    RiskEventType,
    Session,
    StepUpVia,
)

logger = get_logger(__name__)

OTP_METHODS = (MFAMethodType.SMS, MFAMethodType.EMAIL)


class MFAState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PRIMARY_VERIFIED = "primary_verified"
    MFA_REQUIRED = "mfa_required"
    MFA_CHALLENGED = "mfa_challenged"
    MFA_VERIFIED = "mfa_verified"
    MFA_BYPASSED = "mfa_bypassed"
    AUTHENTICATED = "authenticated"


class MFAEvent(str, Enum):
    PRIMARY_OK = "primary_ok"
    STEP_UP_REQUIRED = "step_up_required"
    STEP_UP_NOT_REQUIRED = "step_up_not_required"
    DEVICE_TRUSTED = "device_trusted"
    CHALLENGE_SENT = "challenge_sent"
    CODE_ACCEPTED = "code_accepted"
    COMPLETE = "complete"


_TRANSITIONS = {
    (MFAState.UNAUTHENTICATED, MFAEvent.PRIMARY_OK): MFAState.PRIMARY_VERIFIED,
    (MFAState.PRIMARY_VERIFIED, MFAEvent.STEP_UP_REQUIRED): MFAState.MFA_REQUIRED,
    (MFAState.PRIMARY_VERIFIED, MFAEvent.STEP_UP_NOT_REQUIRED): MFAState.AUTHENTICATED,
    (MFAState.PRIMARY_VERIFIED, MFAEvent.DEVICE_TRUSTED): MFAState.MFA_BYPASSED,
    (MFAState.MFA_REQUIRED, MFAEvent.CHALLENGE_SENT): MFAState.MFA_CHALLENGED,
    (MFAState.MFA_CHALLENGED, MFAEvent.CHALLENGE_SENT): MFAState.MFA_CHALLENGED,
    (MFAState.MFA_REQUIRED, MFAEvent.CODE_ACCEPTED): MFAState.MFA_VERIFIED,
    (MFAState.MFA_CHALLENGED, MFAEvent.CODE_ACCEPTED): MFAState.MFA_VERIFIED,
    (MFAState.MFA_VERIFIED, MFAEvent.COMPLETE): MFAState.AUTHENTICATED,
    (MFAState.MFA_BYPASSED, MFAEvent.COMPLETE): MFAState.AUTHENTICATED,
}


def next_state(state: MFAState, event: MFAEvent) -> MFAState:
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"illegal MFA transition {state.value} --{event.value}-->") from None


def step_up_required(methods: Sequence[MFAMethod], device_trusted: bool) -> bool:
    """A principal with any enabled challengeable method must step up unless bypassed."""
    challengeable = [m for m in methods if m.enabled and m.method != MFAMethodType.BACKUP_CODES]
    return bool(challengeable) and not device_trusted


def is_recent(verified_at: Optional[datetime], now: datetime, window: timedelta) -> bool:
    return verified_at is not None and verified_at <= now and now - verified_at <= window


def mask_phone(phone: Optional[str]) -> str:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    return f"***-***-{digits[-4:]}" if len(digits) >= 4 else "***-***-****"


def mask_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def mask_destination(method: MFAMethod) -> Optional[str]:
    if method.method == MFAMethodType.SMS:
        return mask_phone(method.phone_number)
    if method.method == MFAMethodType.EMAIL:
        return mask_email(method.email)
    return None


def generate_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")


def totp_counter(timestamp: float, interval: int = 30) -> int:
    return int(timestamp // interval)


def generate_totp(secret: str, counter: int, *, digits: int = 6) -> str:
    """RFC 6238 code for ``counter`` (HMAC-SHA1, the authenticator-app default)."""
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded.upper(), True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def build_otpauth_uri(secret: str, account: str, issuer: str, *, interval: int = 30) -> str:
    label = quote(f"{issuer}:{account}")
    return (
        f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
        f"&algorithm=SHA1&digits=6&period={interval}"
    )


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in code if ch.isalnum()).upper()


def generate_backup_codes(count: int) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


@dataclass(frozen=True)
class Challenge:
    reference: str
    method_id: str
    method: MFAMethodType
    destination: Optional[str]
    expires_at: Optional[datetime]
    delivery_reference: Optional[str] = None


@dataclass(frozen=True)
class MFAVerification:
    method_id: str
    method: MFAMethodType
    verified_at: datetime
    session: Optional[Session] = None
    remaining_backup_codes: Optional[int] = None


@dataclass(frozen=True)
class TOTPEnrollment:
    method_id: str
    secret: str
    otpauth_uri: str


@dataclass(frozen=True)
class EnrollmentResult:
    method: MFAMethod
    backup_codes: Optional[List[str]] = None


class MFAEngine:
    def __init__(
        self,
        store: CredentialStore,
        signals: RiskSignalStore,
        cache: SessionCache,
        sessions: SessionStore,
        risk: RiskEngine,
        notifier: Notifier,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.store = store
        self.signals = signals
        self.cache = cache
        self.sessions = sessions
        self.risk = risk
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.recent_window = timedelta(minutes=settings.mfa_recent_window_minutes)
        self.notifier.on_status(self._on_delivery_status)

    def _on_delivery_status(self, reference: str, status: str) -> None:
        logger.info("otp_delivery_status", reference=reference, status=status)

    # -- queries ----------------------------------------------------------

    async def list_methods(self, principal_id: str) -> List[MFAMethod]:
        """Enabled methods, primary first."""
        return await self.store.list_mfa_methods(principal_id)

    def is_recently_verified(self, session: Session) -> bool:
        return session.mfa_verified and is_recent(
            session.mfa_verified_at, self.clock.now(), self.recent_window
        )

    def require_recent(self, session: Session) -> None:
        if not self.is_recently_verified(session):
            raise MFARequired(reason="step_up_stale")

    # -- challenge --------------------------------------------------------

    async def _find_method(
        self, principal_id: str, method_id: Optional[str], *, allow_pending: bool = False
    ) -> Optional[MFAMethod]:
        if method_id:
            method = await self.store.get_mfa_method(method_id)
            if method is None or method.principal_id != principal_id:
                return None
            if method.enabled:
                return method
            pending = method.verified_at is None and method.disabled_at is None
            return method if allow_pending and pending else None
        for method in await self.store.list_mfa_methods(principal_id):
            if method.method != MFAMethodType.BACKUP_CODES:
                return method
        return None

    async def challenge(
        self,
        principal_id: str,
        method_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Challenge:
        method = await self._find_method(principal_id, method_id, allow_pending=True)
        if method is None or method.method == MFAMethodType.BACKUP_CODES:
            raise MFAVerificationFailed(reason="config_not_found")
        reference = secrets.token_urlsafe(16)
        if method.method not in OTP_METHODS:
            return Challenge(reference, method.id, method.method, None, None)

        now = self.clock.now()
        ttl = timedelta(minutes=self.settings.mfa_otp_ttl_minutes)
        code = f"{secrets.randbelow(900000) + 100000}"
        await self.cache.put_value(
            self._otp_key(method.id, code), reference, int(ttl.total_seconds())
        )
        destination = method.phone_number if method.method == MFAMethodType.SMS else method.email
        delivery = self.notifier.dispatch(
            OTPMessage(
                channel=method.method.value,
                destination=destination or "",
                code=code,
                principal_id=principal_id,
                expires_at=now + ttl,
            )
        )
        logger.info(
            "mfa_challenge_sent",
            principal_id=principal_id,
            method_id=method.id,
            method=method.method.value,
            delivery_reference=delivery,
        )
        return Challenge(
            reference,
            method.id,
            method.method,
            mask_destination(method),
            now + ttl,
            delivery_reference=delivery,
        )

    @staticmethod
    def _otp_key(method_id: str, code: str) -> str:
        return f"mfa:otp:{method_id}:{hash_secret(code.strip())}"

    # -- verification -----------------------------------------------------

    def _rate_key(self, principal_id: str, context: RequestContext) -> str:
        return f"mfa:failures:{principal_id}:{context.ip_addr or '-'}"

    async def _reserve_attempt(self, principal_id: str, context: RequestContext) -> None:
        """Take one slot in the (principal, ip) window or raise ``RateLimited``.

        The slot is taken before any code is evaluated and stays as the failure
        record when the code is wrong, so concurrent guesses share one budget.
        """
        now = self.clock.now()
        window = self.settings.mfa_rate_limit_window_minutes * 60
        admitted, failures, oldest = await self.cache.reserve_hit(
            self._rate_key(principal_id, context),
            now.timestamp(),
            window,
            self.settings.mfa_rate_limit_attempts,
        )
        if admitted:
            return
        retry_after = window
        if oldest is not None:
            retry_after = max(1, int(oldest + window - now.timestamp()) + 1)
        logger.warning(
            "mfa_rate_limited",
            principal_id=principal_id,
            ip_addr=context.ip_addr,
            failures=failures,
        )
        await self.risk.record(
            RiskSignal(
                type=RiskEventType.RATE_LIMIT,
                occurred_at=now,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                principal_id=principal_id,
                details={"scope": "mfa_verify", "failures": failures},
            )
        )
        raise RateLimited(retry_after=retry_after, reason="mfa_rate_limited")

    async def _check_totp(self, method: MFAMethod, code: str) -> Optional[str]:
        """Return a failure reason, or None when the code is accepted."""
        if not method.secret:
            return "secret_unavailable"
        interval = self.settings.mfa_totp_interval_seconds
        current = totp_counter(self.clock.now().timestamp(), interval)
        candidate = code.strip()
        window = self.settings.mfa_totp_window
        for counter in range(current - window, current + window + 1):
            generated = generate_totp(method.secret, counter)
            if generated and hmac.compare_digest(generated, candidate):
                # Each time step is accepted once per method
                claimed = await self.cache.claim(
                    f"mfa:totp_used:{method.id}:{counter}", interval * (2 * window + 2)
                )
                return None if claimed else "code_reused"
        return "invalid_code"

    async def _check_code(
        self, method: MFAMethod, code: str, now: datetime
    ) -> tuple[Optional[str], Optional[int]]:
        if method.method == MFAMethodType.TOTP:
            return await self._check_totp(method, code), None
        if method.method in OTP_METHODS:
            taken = await self.cache.take_value(self._otp_key(method.id, code))
            return (None if taken is not None else "invalid_code"), None
        remaining = await self.store.consume_backup_code(
            method.id, hash_secret(normalize_backup_code(code)), now
        )
        if remaining is None:
            return "invalid_code", None
        return None, remaining

    async def _resolve_for_verify(
        self, principal_id: str, method_id: Optional[str], is_backup: bool
    ) -> Optional[MFAMethod]:
        if is_backup:
            for method in await self.store.list_mfa_methods(principal_id):
                if method.method == MFAMethodType.BACKUP_CODES:
                    return method
            return None
        method = await self._find_method(principal_id, method_id)
        if method is not None and method.method == MFAMethodType.BACKUP_CODES:
            return None
        return method

    async def _record_attempt(
        self,
        principal_id: str,
        method: Optional[MFAMethod],
        code: str,
        success: bool,
        failure_reason: Optional[str],
        context: RequestContext,
        now: datetime,
    ) -> None:
        await self.signals.append_mfa_attempt(
            MFAAttempt(
                id=generate_id("mfa_att"),
                principal_id=principal_id,
                method_id=method.id if method else None,
                method=method.method if method else None,
                code_hash=hash_secret(f"{method.id if method else '-'}:{code}"),
                success=success,
                failure_reason=failure_reason,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                device_fingerprint=context.device_fingerprint,
                created_at=now,
            )
        )

    async def verify(
        self,
        principal_id: str,
        code: str,
        context: Optional[RequestContext] = None,
        *,
        method_id: Optional[str] = None,
        is_backup: bool = False,
        session_id: Optional[str] = None,
    ) -> MFAVerification:
        """Check a step-up code and, on success, mark ``session_id`` verified.

        An attempt slot is reserved before the code is looked at, so an
        exhausted window rejects even a correct code. Every failure surfaces as
        the same ``MFAVerificationFailed``; the specific reason only reaches
        the attempt log.
        """
        context = context or RequestContext()
        await self._reserve_attempt(principal_id, context)

        now = self.clock.now()
        method = await self._resolve_for_verify(principal_id, method_id, is_backup)
        if method is None:
            raise await self._reject(principal_id, None, code, "config_not_found", context, now)
        reason, remaining = await self._check_code(method, code or "", now)
        if reason is not None:
            raise await self._reject(principal_id, method, code, reason, context, now)

        if method.method != MFAMethodType.BACKUP_CODES:
            await self.store.record_mfa_use(method.id, now)
        await self.cache.clear_hits(self._rate_key(principal_id, context))
        await self._record_attempt(principal_id, method, code, True, None, context, now)
        await self.risk.record(
            RiskSignal(
                type=RiskEventType.MFA_VERIFY,
                occurred_at=now,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                principal_id=principal_id,
                details={"method": method.method.value, "success": True},
            )
        )
        if remaining is not None and remaining <= 2:
            logger.warning("backup_codes_running_low", principal_id=principal_id, remaining=remaining)

        session = None
        if session_id:
            session = await self.sessions.mark_step_up_complete(session_id, StepUpVia.EXPLICIT)
        logger.info(
            "mfa_verified",
            principal_id=principal_id,
            method_id=method.id,
            method=method.method.value,
        )
        return MFAVerification(
            method_id=method.id,
            method=method.method,
            verified_at=now,
            session=session,
            remaining_backup_codes=remaining,
        )

    async def _reject(
        self,
        principal_id: str,
        method: Optional[MFAMethod],
        code: str,
        reason: str,
        context: RequestContext,
        now: datetime,
    ) -> MFAVerificationFailed:
        """Log a failed attempt; the reserved window slot is kept as its record."""
        await self._record_attempt(principal_id, method, code, False, reason, context, now)
        await self.risk.record(
            RiskSignal(
                type=RiskEventType.MFA_VERIFY,
                occurred_at=now,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                principal_id=principal_id,
                details={"success": False, "failure_reason": reason},
            )
        )
        logger.warning("mfa_verify_failed", principal_id=principal_id, failure_reason=reason)
        return MFAVerificationFailed(reason=reason)

    # -- enrollment and management ----------------------------------------

    async def _new_method(self, principal_id: str, method_type: MFAMethodType, **fields) -> MFAMethod:
        return await self.store.add_mfa_method(
            MFAMethod(
                id=generate_id("mfa"),
                principal_id=principal_id,
                method=method_type,
                enabled=False,
                created_at=self.clock.now(),
                **fields,
            )
        )

    async def enroll_totp(self, principal_id: str, account_label: str) -> TOTPEnrollment:
        secret = generate_totp_secret()
        method = await self._new_method(principal_id, MFAMethodType.TOTP, secret=secret)
        logger.info("mfa_enrollment_started", principal_id=principal_id, method="totp")
        return TOTPEnrollment(
            method_id=method.id,
            secret=secret,
            otpauth_uri=build_otpauth_uri(
                secret,
                account_label,
                self.settings.mfa_issuer,
                interval=self.settings.mfa_totp_interval_seconds,
            ),
        )

    async def enroll_sms(self, principal_id: str, phone_number: str) -> MFAMethod:
        method = await self._new_method(principal_id, MFAMethodType.SMS, phone_number=phone_number)
        logger.info("mfa_enrollment_started", principal_id=principal_id, method="sms")
        return method

    async def enroll_email(self, principal_id: str, email: str) -> MFAMethod:
        method = await self._new_method(principal_id, MFAMethodType.EMAIL, email=email)
        logger.info("mfa_enrollment_started", principal_id=principal_id, method="email")
        return method

    async def confirm_enrollment(
        self,
        principal_id: str,
        method_id: str,
        code: str,
        context: Optional[RequestContext] = None,
    ) -> EnrollmentResult:
        """Enable a pending method after proving possession of it.

        The first confirmed method becomes primary and brings a fresh set of
        backup codes, returned once in plaintext.
        """
        context = context or RequestContext()
        await self._reserve_attempt(principal_id, context)
        now = self.clock.now()
        method = await self._find_method(principal_id, method_id, allow_pending=True)
        if method is None or method.enabled or method.method == MFAMethodType.BACKUP_CODES:
            raise await self._reject(principal_id, method, code, "config_not_found", context, now)
        reason, _ = await self._check_code(method, code or "", now)
        if reason is not None:
            raise await self._reject(principal_id, method, code, reason, context, now)
        await self.cache.clear_hits(self._rate_key(principal_id, context))

        existing = await self.store.list_mfa_methods(principal_id)
        has_primary = any(m.primary for m in existing)
        method = await self.store.update_mfa_method(
            method.id, enabled=True, verified_at=now, primary=not has_primary
        )
        await self._record_attempt(principal_id, method, code, True, None, context, now)
        backup_codes: Optional[List[str]] = None
        if not any(m.method == MFAMethodType.BACKUP_CODES for m in existing):
            backup_codes = generate_backup_codes(self.settings.mfa_backup_code_count)
            backup = await self._new_method(
                principal_id,
                MFAMethodType.BACKUP_CODES,
                backup_code_hashes=[hash_secret(c) for c in backup_codes],
            )
            await self.store.update_mfa_method(backup.id, enabled=True, verified_at=now)
        await self.risk.record(
            RiskSignal(
                type=RiskEventType.MFA_SETUP,
                occurred_at=now,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                principal_id=principal_id,
                details={"method": method.method.value},
            )
        )
        logger.info("mfa_method_enabled", principal_id=principal_id, method_id=method.id)
        return EnrollmentResult(method=method, backup_codes=backup_codes)

    async def disable_method(self, principal_id: str, method_id: str, reason: str = "user_request") -> MFAMethod:
        method = await self.store.get_mfa_method(method_id)
        if method is None or method.principal_id != principal_id:
            raise ConstraintViolation("mfa method not found", {"method_id": method_id})
        now = self.clock.now()
        disabled = await self.store.update_mfa_method(
            method_id, enabled=False, primary=False, disabled_at=now, disabled_reason=reason
        )
        remaining = await self.store.list_mfa_methods(principal_id)
        challengeable = [m for m in remaining if m.method != MFAMethodType.BACKUP_CODES]
        if not challengeable:
            # Backup codes alone must not keep step-up alive
            for m in remaining:
                await self.store.update_mfa_method(
                    m.id, enabled=False, primary=False, disabled_at=now, disabled_reason="no_primary_method"
                )
        elif method.primary:
            await self.store.set_primary_mfa_method(principal_id, challengeable[0].id)
        logger.info("mfa_method_disabled", principal_id=principal_id, method_id=method_id, reason=reason)
        return disabled

    async def set_primary(self, principal_id: str, method_id: str) -> None:
        method = await self.store.get_mfa_method(method_id)
        if method is None or method.method == MFAMethodType.BACKUP_CODES:
            raise ConstraintViolation("mfa method not eligible", {"method_id": method_id})
        await self.store.set_primary_mfa_method(principal_id, method_id)

    async def regenerate_backup_codes(self, principal_id: str) -> List[str]:
        codes = generate_backup_codes(self.settings.mfa_backup_code_count)
        hashes = [hash_secret(c) for c in codes]
        now = self.clock.now()
        for method in await self.store.list_mfa_methods(principal_id):
            if method.method == MFAMethodType.BACKUP_CODES:
                await self.store.update_mfa_method(method.id, backup_code_hashes=hashes)
                break
        else:
            if not await self.store.list_mfa_methods(principal_id):
                raise ConstraintViolation("no enabled mfa method", {"principal_id": principal_id})
            backup = await self._new_method(
                principal_id, MFAMethodType.BACKUP_CODES, backup_code_hashes=hashes
            )
            await self.store.update_mfa_method(backup.id, enabled=True, verified_at=now)
        logger.info("backup_codes_regenerated", principal_id=principal_id, count=len(codes))
        return codes


__all__ = [
    "Challenge",
    "EnrollmentResult",
    "MFAEngine",
    "MFAEvent",
    "MFAState",
    "MFAVerification",
    "TOTPEnrollment",
    "build_otpauth_uri",
    "generate_totp",
    "is_recent",
    "mask_email",
    "mask_phone",
    "next_state",
    "step_up_required",
    "totp_counter",
]
