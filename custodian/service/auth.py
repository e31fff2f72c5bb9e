from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from custodian.clock import Clock
from custodian.config import Settings
from custodian.logging import get_logger
from custodian.service.context import RequestContext
from custodian.service.devices import TrustedDeviceEvaluator
from custodian.service.errors import (
    AccountLocked,
    AccountNotActive,
    InvalidCredentials,
    MFARequired,
    NotFoundError,
    RateLimited,
    SessionNotFound,
    TokenFamilyCompromised,
    TokenRevoked,
    ValidationError,
)
from custodian.service.mfa import (
    Challenge,
    MFAEngine,
    MFAEvent,
    MFAState,
    mask_destination,
    next_state,
    step_up_required,
)
from custodian.service.risk import RiskAssessment, RiskEngine, RiskSignal
from custodian.service.sessions import SessionStore
from custodian.service.tokens import Claims, TokenPair, TokenService
from custodian.storage.common import CredentialStore, RiskSignalStore
from custodian.storage.models import (
    LoginAttempt,
    MFAMethod,
    MFAMethodType,
    Principal,
    PrincipalStatus,
    RiskAction,
    RiskEventType,
    RiskLevel,
    Session,
    TrustedDevice,
)

logger = get_logger(__name__)

AUTHENTICATED = "authenticated"
MFA_REQUIRED = "mfa_required"


@dataclass(frozen=True)
class MaskedMethod:
    id: str
    method: MFAMethodType
    primary: bool
    destination: Optional[str]

    @classmethod
    def from_method(cls, method: MFAMethod) -> "MaskedMethod":
        return cls(method.id, method.method, method.primary, mask_destination(method))


@dataclass(frozen=True)
class LoginResult:
    status: str
    session: Session
    tokens: Optional[TokenPair] = None
    methods: List[MaskedMethod] = field(default_factory=list)
    risk: Optional[RiskAssessment] = None
    trusted_device: Optional[TrustedDevice] = None
    remaining_backup_codes: Optional[int] = None

    @property
    def mfa_required(self) -> bool:
        return self.status == MFA_REQUIRED


@dataclass
class AuthContext:
    principal_id: str
    session_id: str
    family_id: str
    scope: tuple
    mfa_verified: bool
    mfa_verified_at: Optional[datetime] = None
    claims: Optional[Claims] = None


@dataclass(frozen=True)
class SessionSummary:
    id: str
    created_at: datetime
    last_access_at: datetime
    expires_at: datetime
    ip_addr: Optional[str]
    user_agent: Optional[str]
    mfa_verified: bool
    current: bool


class AuthService:
    """Composes the login, step-up, refresh and logout flows.

    Every rejection of a sign-in surfaces as the same opaque error; the
    specific cause is attached as ``reason`` and written to the attempt log
    and the audit channel only.
    """

    def __init__(
        self,
        store: CredentialStore,
        signals: RiskSignalStore,
        tokens: TokenService,
        sessions: SessionStore,
        mfa: MFAEngine,
        devices: TrustedDeviceEvaluator,
        risk: RiskEngine,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.store = store
        self.signals = signals
        self.tokens = tokens
        self.sessions = sessions
        self.mfa = mfa
        self.devices = devices
        self.risk = risk
        self.settings = settings
        self.clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Unknown emails still pay for one hash verification
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # -- credentials ------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, credential_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(credential_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # -- login ------------------------------------------------------------

    async def _log_attempt(
        self,
        context: RequestContext,
        *,
        email: str,
        principal_id: Optional[str],
        success: bool,
        failure_reason: Optional[str] = None,
    ) -> None:
        await self.signals.append_login_attempt(
            LoginAttempt(
                principal_id=principal_id,
                email=email,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                success=success,
                failure_reason=failure_reason,
                created_at=self.clock.now(),
            )
        )

    async def _reject(
        self,
        context: RequestContext,
        email: str,
        principal_id: Optional[str],
        reason: str,
    ) -> None:
        await self._log_attempt(
            context, email=email, principal_id=principal_id, success=False, failure_reason=reason
        )
        await self.risk.record(
            RiskSignal(
                type=RiskEventType.FAILED_AUTH,
                occurred_at=self.clock.now(),
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                principal_id=principal_id,
                details={"failure_reason": reason},
            )
        )
        logger.warning("login_failed", principal_id=principal_id, reason=reason, ip_addr=context.ip_addr)

    async def _check_blocks(self, context: RequestContext, principal: Optional[Principal]) -> None:
        decision = await self.risk.should_block(
            principal_id=principal.id if principal else None, ip_addr=context.ip_addr
        )
        if not decision.blocked:
            return
        retry_after = decision.retry_after(self.clock.now())
        logger.warning(
            "login_blocked",
            principal_id=principal.id if principal else None,
            ip_addr=context.ip_addr,
            reason=decision.reason,
        )
        if decision.reason == "account_locked":
            raise AccountLocked(retry_after=retry_after, reason=decision.reason)
        if decision.reason == "account_suspended":
            raise AccountNotActive(reason=decision.reason)
        raise RateLimited(retry_after=retry_after, reason=decision.reason)

    async def login(
        self,
        email: str,
        password: str,
        context: Optional[RequestContext] = None,
        *,
        scope: Optional[Iterable[str]] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        context = context or RequestContext()
        await self._check_blocks(context, None)

        principal = await self.store.find_principal_by_email(email)
        if principal is None:
            self.verify_password(self._dummy_hash, password)
            await self._reject(context, email, None, "unknown_principal")
            raise InvalidCredentials(reason="unknown_principal")

        now = self.clock.now()
        if principal.is_locked(now):
            await self._reject(context, email, principal.id, "account_locked")
            raise AccountLocked(
                retry_after=max(1, int((principal.locked_until - now).total_seconds())),
                reason="account_locked",
            )

        if not self.verify_password(principal.credential_hash, password):
            updated = await self.store.record_failed_attempt(
                principal.id,
                now,
                max_attempts=self.settings.max_failed_attempts,
                lockout_minutes=self.settings.lockout_minutes,
            )
            await self._reject(context, email, principal.id, "invalid_password")
            if updated.is_locked(now):
                logger.warning("account_locked", principal_id=principal.id, failed_attempts=updated.failed_attempts)
            raise InvalidCredentials(reason="invalid_password")

        if principal.status != PrincipalStatus.ACTIVE:
            await self._reject(context, email, principal.id, f"status_{principal.status.value}")
            raise AccountNotActive(reason=f"status_{principal.status.value}")
        await self._check_blocks(context, principal)

        state = next_state(MFAState.UNAUTHENTICATED, MFAEvent.PRIMARY_OK)
        assessment = await self.risk.record(
            RiskSignal(
                type=RiskEventType.LOGIN,
                occurred_at=now,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                principal_id=principal.id,
                details={"remember_me": remember_me},
            )
        )
        if assessment.blocked:
            await self._reject(context, email, principal.id, "risk_blocked")
            raise InvalidCredentials(reason="risk_blocked")
        await self.store.record_successful_attempt(principal.id, now, context.ip_addr)
        await self._log_attempt(context, email=email, principal_id=principal.id, success=True)

        methods = await self.mfa.list_methods(principal.id)
        needs_step_up = step_up_required(methods, device_trusted=False)
        absolute_ttl = (
            self.settings.remember_me_absolute_ttl_minutes
            if remember_me
            else self.settings.session_absolute_ttl_minutes
        )
        session = Session.new(
            principal.id,
            now,
            idle_ttl_minutes=self.settings.session_idle_ttl_minutes,
            absolute_ttl_minutes=absolute_ttl,
            device_fingerprint=context.device_fingerprint,
            ip_addr=context.ip_addr,
            user_agent=context.user_agent,
            scope=sorted(set(scope or ())),
            mfa_required=needs_step_up,
            risk_score=assessment.score,
            suspicious=assessment.level in (RiskLevel.HIGH, RiskLevel.CRITICAL),
            meta={"mfa_state": state.value, "remember_me": remember_me},
        )
        await self.sessions.create(session)

        if not needs_step_up:
            state = next_state(state, MFAEvent.STEP_UP_NOT_REQUIRED)
            return await self._complete(session, state, assessment)

        # Trusted devices only skip step-up for otherwise unremarkable sign-ins
        if context.device_fingerprint and assessment.action == RiskAction.ALLOW:
            trust = await self.devices.evaluate(
                principal.id,
                context.device_fingerprint,
                context.ip_addr,
                session_id=session.id,
                user_agent=context.user_agent,
            )
            if trust.trusted and trust.session is not None:
                state = next_state(state, MFAEvent.DEVICE_TRUSTED)
                state = next_state(state, MFAEvent.COMPLETE)
                return await self._complete(trust.session, state, assessment)

        state = next_state(state, MFAEvent.STEP_UP_REQUIRED)
        session = await self._set_state(session, state)
        logger.info("login_mfa_required", principal_id=principal.id, session_id=session.id)
        return LoginResult(
            status=MFA_REQUIRED,
            session=session,
            methods=[MaskedMethod.from_method(m) for m in methods if m.method != MFAMethodType.BACKUP_CODES],
            risk=assessment,
        )

    async def _set_state(self, session: Session, state: MFAState) -> Session:
        updated = await self.sessions.touch(session.id, meta={**session.meta, "mfa_state": state.value})
        if updated is None:
            raise SessionNotFound(reason="session_vanished")
        return updated

    async def _complete(
        self,
        session: Session,
        state: MFAState,
        assessment: Optional[RiskAssessment],
        **extra,
    ) -> LoginResult:
        session = await self._set_state(session, state)
        pair = await self.tokens.issue(session.principal_id, session.id, session.family_id, session.scope)
        logger.info(
            "login_succeeded",
            principal_id=session.principal_id,
            session_id=session.id,
            mfa_via=session.mfa_via.value if session.mfa_via else None,
        )
        return LoginResult(status=AUTHENTICATED, session=session, tokens=pair, risk=assessment, **extra)

    # -- step-up ----------------------------------------------------------

    async def _pending_session(self, session_id: str) -> Session:
        session = await self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(reason="session_missing")
        if not session.step_up_pending:
            raise ValidationError("Verification is not pending for this session", reason="step_up_not_pending")
        return session

    async def send_mfa_challenge(
        self,
        session_id: str,
        method_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Challenge:
        session = await self._pending_session(session_id)
        challenge = await self.mfa.challenge(session.principal_id, method_id, context)
        state = MFAState(session.meta.get("mfa_state", MFAState.MFA_REQUIRED.value))
        await self._set_state(session, next_state(state, MFAEvent.CHALLENGE_SENT))
        return challenge

    async def verify_mfa(
        self,
        session_id: str,
        code: str,
        context: Optional[RequestContext] = None,
        *,
        method_id: Optional[str] = None,
        is_backup: bool = False,
        trust_device: bool = False,
        device_name: Optional[str] = None,
    ) -> LoginResult:
        """Complete a pending login with a step-up code and issue tokens."""
        context = context or RequestContext()
        session = await self._pending_session(session_id)
        verification = await self.mfa.verify(
            session.principal_id,
            code,
            context,
            method_id=method_id,
            is_backup=is_backup,
            session_id=session.id,
        )
        verified = verification.session or session
        state = MFAState(session.meta.get("mfa_state", MFAState.MFA_REQUIRED.value))
        state = next_state(next_state(state, MFAEvent.CODE_ACCEPTED), MFAEvent.COMPLETE)

        device = None
        fingerprint = context.device_fingerprint or verified.device_fingerprint
        if trust_device and fingerprint:
            device = await self.devices.register(
                verified.principal_id, fingerprint, device_name, verified, context
            )
        return await self._complete(
            verified,
            state,
            None,
            trusted_device=device,
            remaining_backup_codes=verification.remaining_backup_codes,
        )

    # -- tokens -----------------------------------------------------------

    async def refresh(self, refresh_token: str, context: Optional[RequestContext] = None) -> TokenPair:
        context = context or RequestContext()
        claims = self.tokens.peek_refresh(refresh_token)
        session = await self.sessions.get(claims.session_id)
        if session is None:
            await self.tokens.revoke_family(claims.family_id, reason="session_missing")
            raise SessionNotFound(reason="session_missing")
        if session.family_id != claims.family_id:
            raise TokenRevoked(reason="family_mismatch")
        if session.step_up_pending:
            raise MFARequired(reason="step_up_pending")
        try:
            pair = await self.tokens.rotate_refresh(refresh_token, context)
        except TokenFamilyCompromised:
            await self.sessions.revoke(session.id, reason="refresh_reuse")
            raise
        touched = {
            key: value
            for key, value in (("ip_addr", context.ip_addr), ("user_agent", context.user_agent))
            if value
        }
        await self.sessions.touch(session.id, **touched)
        return pair

    async def authenticate(self, access_token: str, *, require_recent_mfa: bool = False) -> AuthContext:
        claims = await self.tokens.validate_access(access_token)
        session = await self.sessions.get(claims.session_id)
        if session is None:
            raise SessionNotFound(reason="session_missing")
        if session.family_id != claims.family_id:
            raise TokenRevoked(reason="family_mismatch")
        if session.step_up_pending:
            raise MFARequired(reason="step_up_pending")
        if require_recent_mfa:
            self.mfa.require_recent(session)
        session = await self.sessions.touch(session.id) or session
        return AuthContext(
            principal_id=claims.principal_id,
            session_id=session.id,
            family_id=session.family_id,
            scope=claims.scope,
            mfa_verified=session.mfa_verified,
            mfa_verified_at=session.mfa_verified_at,
            claims=claims,
        )

    async def logout(self, access_token: str, *, all_devices: bool = False) -> int:
        """Revoke the caller's session, or every session when ``all_devices``."""
        claims = await self.tokens.validate_access(access_token)
        await self.tokens.revoke_token(claims.jti, claims.expires_at)
        if all_devices:
            revoked = await self.sessions.revoke_all_for_principal(claims.principal_id, reason="logout_all")
        else:
            revoked = int(await self.sessions.revoke(claims.session_id, reason="logout"))
            await self.tokens.revoke_family(claims.family_id, reason="logout")
        logger.info(
            "logout",
            principal_id=claims.principal_id,
            session_id=claims.session_id,
            all_devices=all_devices,
            revoked=revoked,
        )
        return revoked

    # -- session management -----------------------------------------------

    async def list_sessions(
        self, principal_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionSummary]:
        return [
            SessionSummary(
                id=s.id,
                created_at=s.created_at,
                last_access_at=s.last_access_at,
                expires_at=s.expires_at,
                ip_addr=s.ip_addr,
                user_agent=s.user_agent,
                mfa_verified=s.mfa_verified,
                current=s.id == current_session_id,
            )
            for s in await self.sessions.list_for_principal(principal_id)
        ]

    async def revoke_session(self, principal_id: str, session_id: str) -> bool:
        session = await self.sessions.get(session_id)
        if session is None or session.principal_id != principal_id:
            raise NotFoundError("Session not found", reason="session_not_owned")
        return await self.sessions.revoke(session_id, reason="user_revoked")


__all__ = [
    "AUTHENTICATED",
    "AuthContext",
    "AuthService",
    "LoginResult",
    "MFA_REQUIRED",
    "MaskedMethod",
    "SessionSummary",
]
