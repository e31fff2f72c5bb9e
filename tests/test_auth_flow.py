"""End-to-end sign-in, step-up, refresh and logout flows."""

import asyncio
from datetime import timedelta

import pytest

from custodian.service.auth import AUTHENTICATED, MFA_REQUIRED
from custodian.service.context import RequestContext
from custodian.service.errors import (
    AccountLocked,
    AccountNotActive,
    AuthenticationError,
    InvalidCredentials,
    MFARequired,
    MFAVerificationFailed,
    NotFoundError,
    RateLimited,
    TokenFamilyCompromised,
    TokenRevoked,
    ValidationError,
)
from custodian.service.tokens import TokenPair
from custodian.storage.models import MFAMethodType, PrincipalStatus, StepUpVia

PASSWORD = "Correct-Horse-Battery-Staple-42"
BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"

EMAIL = "alice@example.com"


async def _login(auth, context, **kwargs):
    return await auth.login(EMAIL, PASSWORD, context, **kwargs)


class TestPasswordLogin:
    async def test_login_without_mfa_issues_tokens(self, auth, principal, context):
        """A principal without MFA is authenticated on the password alone."""
        result = await _login(auth, context, scope=["wallet:read"])

        assert result.status == AUTHENTICATED
        assert result.tokens is not None
        assert result.session.meta["mfa_state"] == "authenticated"
        auth_ctx = await auth.authenticate(result.tokens.access_token)
        assert auth_ctx.principal_id == principal.id
        assert auth_ctx.session_id == result.session.id
        assert auth_ctx.scope == ("wallet:read",)

    async def test_email_lookup_ignores_case(self, auth, principal, context):
        result = await auth.login("ALICE@example.COM", PASSWORD, context)

        assert result.session.principal_id == principal.id

    async def test_unknown_email_and_wrong_password_look_the_same(self, auth, principal, context):
        """Callers cannot tell which check rejected them."""
        with pytest.raises(InvalidCredentials) as unknown:
            await auth.login("nobody@example.com", PASSWORD, context)
        with pytest.raises(InvalidCredentials) as wrong:
            await auth.login(EMAIL, "not-the-password", context)

        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code
        assert unknown.value.reason == "unknown_principal"
        assert wrong.value.reason == "invalid_password"

    async def test_failed_attempts_are_logged(self, auth, store, principal, context):
        with pytest.raises(InvalidCredentials):
            await auth.login(EMAIL, "not-the-password", context)

        attempt = store.login_attempts[-1]
        assert attempt.success is False
        assert attempt.principal_id == principal.id
        assert attempt.failure_reason == "invalid_password"

    async def test_lockout_after_repeated_failures(self, auth, principal, context, settings):
        """The fifth failure locks the account, even the right password is refused."""
        for _ in range(settings.max_failed_attempts):
            with pytest.raises(InvalidCredentials):
                await auth.login(EMAIL, "not-the-password", context)

        with pytest.raises(AccountLocked) as exc_info:
            await _login(auth, context)

        assert exc_info.value.retry_after == settings.lockout_minutes * 60

    async def test_success_resets_failure_counter(self, auth, store, principal, context):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await auth.login(EMAIL, "not-the-password", context)

        await _login(auth, context)

        assert (await store.get_principal(principal.id)).failed_attempts == 0

    async def test_suspended_principal(self, auth, store, principal, context):
        await store.set_principal_status(principal.id, PrincipalStatus.SUSPENDED)

        with pytest.raises(AccountNotActive):
            await _login(auth, context)

    async def test_blocked_ip_is_rate_limited(self, auth, principal, settings):
        """An address with too many recent failures is turned away up front."""
        attacker = RequestContext(ip_addr="192.0.2.66", user_agent=BROWSER_UA)
        for n in range(settings.block_ip_failure_threshold):
            with pytest.raises(InvalidCredentials):
                await auth.login(f"user{n}@example.com", PASSWORD, attacker)

        with pytest.raises(RateLimited) as exc_info:
            await auth.login(EMAIL, PASSWORD, attacker)
        assert exc_info.value.retry_after == settings.block_ip_minutes * 60

    async def test_remember_me_extends_absolute_lifetime(self, auth, principal, context, clock, settings):
        result = await _login(auth, context, remember_me=True)

        assert result.session.absolute_expires_at == clock.now() + timedelta(
            minutes=settings.remember_me_absolute_ttl_minutes
        )
        assert result.session.expires_at == clock.now() + timedelta(
            minutes=settings.session_idle_ttl_minutes
        )


class TestStepUp:
    async def test_totp_login(self, auth, principal, context, enable_totp, totp_now):
        """Password then TOTP: the same code is refused on a later sign-in."""
        enrollment, _ = await enable_totp(principal.id)

        first = await _login(auth, context)
        assert first.status == MFA_REQUIRED
        assert first.tokens is None
        assert [m.method for m in first.methods] == [MFAMethodType.TOTP]

        code = totp_now(enrollment.secret)
        verified = await auth.verify_mfa(first.session.id, code, context)
        assert verified.status == AUTHENTICATED
        assert verified.session.mfa_via == StepUpVia.EXPLICIT
        assert (await auth.authenticate(verified.tokens.access_token)).mfa_verified is True

        second = await _login(auth, context)
        with pytest.raises(MFAVerificationFailed):
            await auth.verify_mfa(second.session.id, code, context)

    async def test_verified_session_cannot_verify_again(self, auth, principal, context, enable_totp, totp_now):
        enrollment, _ = await enable_totp(principal.id)
        pending = await _login(auth, context)
        await auth.verify_mfa(pending.session.id, totp_now(enrollment.secret), context)

        with pytest.raises(ValidationError):
            await auth.verify_mfa(pending.session.id, totp_now(enrollment.secret), context)

    async def test_sms_login_masks_destination(self, auth, mfa, principal, notifier, context):
        """SMS step-up shows only the last four digits and delivers a one-time code."""
        method = await mfa.enroll_sms(principal.id, "+15550101234")
        await mfa.challenge(principal.id, method.id)
        await mfa.confirm_enrollment(principal.id, method.id, notifier.last_code)

        pending = await _login(auth, context)
        assert pending.methods[0].destination == "***-***-1234"

        challenge = await auth.send_mfa_challenge(pending.session.id, context=context)
        assert challenge.destination == "***-***-1234"
        result = await auth.verify_mfa(pending.session.id, notifier.last_code, context)

        assert result.status == AUTHENTICATED
        assert result.session.meta["mfa_state"] == "authenticated"

    async def test_backup_code_login(self, auth, principal, context, enable_totp, settings):
        _, enabled = await enable_totp(principal.id)
        pending = await _login(auth, context)

        result = await auth.verify_mfa(
            pending.session.id, enabled.backup_codes[0].lower(), context, is_backup=True
        )

        assert result.status == AUTHENTICATED
        assert result.remaining_backup_codes == settings.mfa_backup_code_count - 1

    async def test_sixth_attempt_rate_limited(self, auth, principal, context, enable_totp, totp_now, settings):
        """After five failures even the correct code is refused with a retry hint."""
        enrollment, _ = await enable_totp(principal.id)
        pending = await _login(auth, context)
        for _ in range(settings.mfa_rate_limit_attempts):
            with pytest.raises(MFAVerificationFailed):
                await auth.verify_mfa(pending.session.id, "abcdef", context)

        with pytest.raises(RateLimited) as exc_info:
            await auth.verify_mfa(pending.session.id, totp_now(enrollment.secret), context)

        assert 0 < exc_info.value.retry_after <= settings.mfa_rate_limit_window_minutes * 60

    async def test_trusted_device_skips_step_up(self, auth, principal, context, enable_totp, totp_now, clock):
        """A device registered after explicit MFA bypasses it on the next sign-in."""
        enrollment, _ = await enable_totp(principal.id)
        pending = await _login(auth, context)
        verified = await auth.verify_mfa(
            pending.session.id,
            totp_now(enrollment.secret),
            context,
            trust_device=True,
            device_name="Work laptop",
        )
        assert verified.trusted_device is not None
        clock.advance(hours=2)

        result = await _login(auth, context)

        assert result.status == AUTHENTICATED
        assert result.session.mfa_via == StepUpVia.TRUSTED_DEVICE
        assert result.tokens is not None

    async def test_other_fingerprint_still_steps_up(self, auth, principal, context, enable_totp, totp_now):
        enrollment, _ = await enable_totp(principal.id)
        pending = await _login(auth, context)
        await auth.verify_mfa(pending.session.id, totp_now(enrollment.secret), context, trust_device=True)

        phone = RequestContext(
            ip_addr=context.ip_addr, user_agent=context.user_agent, device_fingerprint="fp-phone-0002"
        )
        result = await _login(auth, phone)

        assert result.status == MFA_REQUIRED

    async def test_risky_sign_in_ignores_trusted_device(self, auth, principal, context, enable_totp, totp_now):
        """Elevated risk skips the bypass even for a known device."""
        enrollment, _ = await enable_totp(principal.id)
        pending = await _login(auth, context)
        await auth.verify_mfa(pending.session.id, totp_now(enrollment.secret), context, trust_device=True)

        scripted = RequestContext(
            ip_addr="192.0.2.77", user_agent="curl/8.4.0", device_fingerprint=context.device_fingerprint
        )
        result = await _login(auth, scripted)

        assert result.risk.score >= 50
        assert result.status == MFA_REQUIRED


class TestRefresh:
    async def test_rotation_and_reuse(self, auth, principal, context):
        """R1 -> R2, replaying R1 kills the session so R2 is useless too."""
        first = (await _login(auth, context)).tokens
        second = await auth.refresh(first.refresh_token, context)
        assert second.refresh_token != first.refresh_token
        await auth.authenticate(second.access_token)

        with pytest.raises(TokenFamilyCompromised):
            await auth.refresh(first.refresh_token, context)
        with pytest.raises(AuthenticationError):
            await auth.refresh(second.refresh_token, context)
        with pytest.raises(TokenRevoked):
            await auth.authenticate(second.access_token)

    @pytest.mark.interleaved
    async def test_double_submitted_refresh(self, auth, sessions, principal, context):
        """The same refresh token sent twice at once: one pair, one compromise, session gone."""
        result = await _login(auth, context)

        outcomes = await asyncio.gather(
            auth.refresh(result.tokens.refresh_token, context),
            auth.refresh(result.tokens.refresh_token, context),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if isinstance(o, TokenPair)]
        compromised = [o for o in outcomes if isinstance(o, TokenFamilyCompromised)]
        assert len(winners) == 1
        assert len(compromised) == 1
        assert await sessions.get(result.session.id) is None
        assert await sessions.list_for_principal(principal.id) == []
        with pytest.raises(AuthenticationError):
            await auth.authenticate(winners[0].access_token)
        with pytest.raises(AuthenticationError):
            await auth.refresh(winners[0].refresh_token, context)

    async def test_refresh_touches_session(self, auth, sessions, principal, context, clock):
        result = await _login(auth, context)
        clock.advance(minutes=10)

        await auth.refresh(
            result.tokens.refresh_token, RequestContext(ip_addr="198.51.100.20", user_agent=BROWSER_UA)
        )

        session = await sessions.get(result.session.id)
        assert session.ip_addr == "198.51.100.20"
        assert session.last_access_at == clock.now()

    async def test_recent_mfa_required_after_window(self, auth, principal, context, enable_totp, totp_now, clock):
        """Sensitive calls need a step-up newer than the recency window."""
        enrollment, _ = await enable_totp(principal.id)
        pending = await _login(auth, context)
        result = await auth.verify_mfa(pending.session.id, totp_now(enrollment.secret), context)
        await auth.authenticate(result.tokens.access_token, require_recent_mfa=True)

        clock.advance(minutes=20)
        refreshed = await auth.refresh(result.tokens.refresh_token, context)
        clock.advance(minutes=11)

        await auth.authenticate(refreshed.access_token)
        with pytest.raises(MFARequired):
            await auth.authenticate(refreshed.access_token, require_recent_mfa=True)

    async def test_recent_mfa_never_satisfied_without_step_up(self, auth, principal, context):
        result = await _login(auth, context)

        with pytest.raises(MFARequired):
            await auth.authenticate(result.tokens.access_token, require_recent_mfa=True)


class TestLogoutAndSessions:
    async def test_logout_revokes_current_session(self, auth, sessions, principal, context):
        result = await _login(auth, context)

        assert await auth.logout(result.tokens.access_token) == 1

        assert await sessions.get(result.session.id) is None
        with pytest.raises(TokenRevoked):
            await auth.authenticate(result.tokens.access_token)
        with pytest.raises(AuthenticationError):
            await auth.refresh(result.tokens.refresh_token, context)

    async def test_logout_all_devices(self, auth, principal, context, clock):
        laptop = await _login(auth, context)
        clock.advance(minutes=1)
        phone = await _login(auth, context)

        assert await auth.logout(laptop.tokens.access_token, all_devices=True) == 2

        with pytest.raises(AuthenticationError):
            await auth.authenticate(phone.tokens.access_token)

    async def test_list_sessions_marks_current(self, auth, principal, context, clock):
        older = await _login(auth, context)
        clock.advance(minutes=1)
        newer = await _login(auth, context)

        listed = await auth.list_sessions(principal.id, current_session_id=older.session.id)

        assert [s.id for s in listed] == [newer.session.id, older.session.id]
        assert [s.current for s in listed] == [False, True]

    async def test_revoke_own_session(self, auth, principal, context):
        result = await _login(auth, context)

        assert await auth.revoke_session(principal.id, result.session.id) is True
        assert await auth.list_sessions(principal.id) == []

    async def test_revoke_foreign_session(self, auth, store, principal, context, clock):
        """A principal cannot revoke somebody else's session."""
        store.create_principal("bob@example.com", auth.hash_password(PASSWORD), created_at=clock.now())
        bob = await auth.login("bob@example.com", PASSWORD, context)

        with pytest.raises(NotFoundError):
            await auth.revoke_session(principal.id, bob.session.id)
        assert (await auth.authenticate(bob.tokens.access_token)).session_id == bob.session.id
