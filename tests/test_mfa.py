"""Tests for the MFA engine: state machine, TOTP, OTP delivery, backup codes, rate limits."""

import asyncio

import pytest

from custodian.service.context import RequestContext
from custodian.service.errors import MFARequired, MFAVerificationFailed, RateLimited
from custodian.service.mfa import (
    MFAEvent,
    MFAState,
    build_otpauth_uri,
    generate_totp,
    mask_email,
    mask_phone,
    next_state,
    step_up_required,
)
from custodian.storage.errors import ConstraintViolation
from custodian.storage.models import MFAMethod, MFAMethodType, RiskEventType, Session, StepUpVia

RFC6238_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


async def _pending_session(sessions, clock, principal_id) -> Session:
    session = Session.new(
        principal_id,
        clock.now(),
        idle_ttl_minutes=60,
        absolute_ttl_minutes=600,
        mfa_required=True,
    )
    await sessions.create(session)
    return session


class TestStateMachine:
    def test_explicit_step_up_path(self):
        """The challenge path walks every state in order."""
        state = MFAState.UNAUTHENTICATED
        for event in (
            MFAEvent.PRIMARY_OK,
            MFAEvent.STEP_UP_REQUIRED,
            MFAEvent.CHALLENGE_SENT,
            MFAEvent.CODE_ACCEPTED,
            MFAEvent.COMPLETE,
        ):
            state = next_state(state, event)
        assert state == MFAState.AUTHENTICATED

    def test_trusted_device_path(self):
        """A trusted device bypasses the challenge states."""
        state = next_state(MFAState.UNAUTHENTICATED, MFAEvent.PRIMARY_OK)
        state = next_state(state, MFAEvent.DEVICE_TRUSTED)
        assert state == MFAState.MFA_BYPASSED
        assert next_state(state, MFAEvent.COMPLETE) == MFAState.AUTHENTICATED

    def test_illegal_transition_raises(self):
        """Skipping primary authentication is not a valid move."""
        with pytest.raises(ValueError):
            next_state(MFAState.UNAUTHENTICATED, MFAEvent.CODE_ACCEPTED)
        with pytest.raises(ValueError):
            next_state(MFAState.AUTHENTICATED, MFAEvent.CHALLENGE_SENT)

    def test_step_up_required_decision(self):
        """Only enabled, challengeable methods demand step-up, and trust waives it."""
        totp = MFAMethod(id="m1", principal_id="p", method=MFAMethodType.TOTP, enabled=True)
        backup = MFAMethod(id="m2", principal_id="p", method=MFAMethodType.BACKUP_CODES, enabled=True)
        disabled = MFAMethod(id="m3", principal_id="p", method=MFAMethodType.SMS, enabled=False)

        assert step_up_required([totp], device_trusted=False) is True
        assert step_up_required([totp], device_trusted=True) is False
        assert step_up_required([backup, disabled], device_trusted=False) is False
        assert step_up_required([], device_trusted=False) is False


class TestHelpers:
    def test_rfc6238_vector(self):
        """HMAC-SHA1 TOTP matches the published test vector at T=59."""
        assert generate_totp(RFC6238_SECRET, 1, digits=8) == "94287082"
        assert generate_totp(RFC6238_SECRET, 1) == "287082"

    def test_invalid_secret_yields_no_code(self):
        """An undecodable secret never produces a matching code."""
        assert generate_totp("not base32!", 1) == ""

    def test_masking(self):
        """Destinations are masked down to a recognisable hint."""
        assert mask_phone("+1 (555) 010-1234") == "***-***-1234"
        assert mask_phone(None) == "***-***-****"
        assert mask_email("jane.doe@example.com") == "j***@example.com"
        assert mask_email("broken") == "***"

    def test_otpauth_uri(self):
        """The provisioning URI carries issuer, account and parameters."""
        uri = build_otpauth_uri("ABC", "alice@example.com", "Custodian")
        assert uri.startswith("otpauth://totp/Custodian%3Aalice%40example.com?secret=ABC")
        assert "period=30" in uri


class TestEnrollment:
    async def test_first_method_becomes_primary_with_backup_codes(self, mfa, principal, enable_totp):
        """Confirming the first method enables it as primary and issues ten backup codes."""
        enrollment, result = await enable_totp(principal.id)

        assert result.method.enabled is True
        assert result.method.primary is True
        assert len(result.backup_codes) == 10
        assert len(set(result.backup_codes)) == 10
        methods = await mfa.list_methods(principal.id)
        assert [m.method for m in methods] == [MFAMethodType.TOTP, MFAMethodType.BACKUP_CODES]
        assert enrollment.otpauth_uri.startswith("otpauth://totp/")

    async def test_secret_is_encrypted_at_rest(self, store, principal, enable_totp):
        """The stored TOTP secret is ciphertext; services see plaintext."""
        enrollment, _ = await enable_totp(principal.id)

        assert store.mfa_methods[enrollment.method_id].secret != enrollment.secret
        assert (await store.get_mfa_method(enrollment.method_id)).secret == enrollment.secret

    async def test_wrong_confirmation_code_keeps_method_disabled(self, mfa, principal, context):
        """A failed confirmation leaves the pending method unusable."""
        enrollment = await mfa.enroll_totp(principal.id, "alice@example.com")

        with pytest.raises(MFAVerificationFailed):
            await mfa.confirm_enrollment(principal.id, enrollment.method_id, "badcode", context)
        assert await mfa.list_methods(principal.id) == []

    async def test_sms_enrollment_via_challenge(self, mfa, principal, notifier, context):
        """SMS methods are confirmed with a code delivered through the notifier."""
        method = await mfa.enroll_sms(principal.id, "+15550101234")
        challenge = await mfa.challenge(principal.id, method.id, context)

        assert challenge.destination == "***-***-1234"
        assert notifier.messages[-1].destination == "+15550101234"
        result = await mfa.confirm_enrollment(principal.id, method.id, notifier.last_code, context)
        assert result.method.primary is True

    async def test_second_method_is_not_primary(self, mfa, principal, enable_totp, context):
        """Later methods join as secondary and do not mint new backup codes."""
        await enable_totp(principal.id)
        method = await mfa.enroll_email(principal.id, "alice@example.com")
        await mfa.challenge(principal.id, method.id, context)
        result = await mfa.confirm_enrollment(principal.id, method.id, mfa.notifier.last_code, context)

        assert result.method.primary is False
        assert result.backup_codes is None

    async def test_set_primary_swaps_flag(self, mfa, store, principal, enable_totp, context):
        """At most one method is primary at any time."""
        enrollment, _ = await enable_totp(principal.id)
        method = await mfa.enroll_email(principal.id, "alice@example.com")
        await mfa.challenge(principal.id, method.id, context)
        await mfa.confirm_enrollment(principal.id, method.id, mfa.notifier.last_code, context)

        await mfa.set_primary(principal.id, method.id)

        primaries = [m.id for m in await mfa.list_methods(principal.id) if m.primary]
        assert primaries == [method.id]

    async def test_disable_last_method_disables_backup_codes(self, mfa, principal, enable_totp):
        """Backup codes alone never keep step-up alive."""
        enrollment, _ = await enable_totp(principal.id)

        await mfa.disable_method(principal.id, enrollment.method_id)

        assert await mfa.list_methods(principal.id) == []

    async def test_disable_primary_promotes_next(self, mfa, principal, enable_totp, context):
        """Removing the primary hands the flag to a remaining method."""
        enrollment, _ = await enable_totp(principal.id)
        method = await mfa.enroll_sms(principal.id, "+15550101234")
        await mfa.challenge(principal.id, method.id, context)
        await mfa.confirm_enrollment(principal.id, method.id, mfa.notifier.last_code, context)

        await mfa.disable_method(principal.id, enrollment.method_id)

        methods = await mfa.list_methods(principal.id)
        assert methods[0].id == method.id
        assert methods[0].primary is True

    async def test_disable_foreign_method_rejected(self, mfa, principal, enable_totp):
        """Methods of another principal cannot be disabled."""
        enrollment, _ = await enable_totp(principal.id)

        with pytest.raises(ConstraintViolation):
            await mfa.disable_method("usr_someone_else", enrollment.method_id)


class TestVerification:
    async def test_totp_marks_session_verified(self, mfa, sessions, clock, principal, enable_totp, totp_now, context):
        """A correct TOTP code marks the session verified through the explicit path."""
        enrollment, _ = await enable_totp(principal.id)
        session = await _pending_session(sessions, clock, principal.id)

        result = await mfa.verify(principal.id, totp_now(enrollment.secret), context, session_id=session.id)

        assert result.session.mfa_verified is True
        assert result.session.mfa_via == StepUpVia.EXPLICIT
        assert result.method == MFAMethodType.TOTP

    async def test_totp_code_is_single_use(self, mfa, principal, enable_totp, totp_now, context):
        """Replaying a TOTP code inside its validity window fails."""
        enrollment, _ = await enable_totp(principal.id)
        code = totp_now(enrollment.secret)
        await mfa.verify(principal.id, code, context)

        with pytest.raises(MFAVerificationFailed) as exc_info:
            await mfa.verify(principal.id, code, context)
        assert exc_info.value.reason == "code_reused"

    async def test_adjacent_step_accepted(self, mfa, principal, enable_totp, totp_now, context):
        """Codes from the neighbouring time step are tolerated."""
        enrollment, _ = await enable_totp(principal.id)

        result = await mfa.verify(principal.id, totp_now(enrollment.secret, offset_steps=-1), context)

        assert result.method_id == enrollment.method_id

    async def test_failures_are_indistinguishable(self, mfa, principal, enable_totp, context):
        """Wrong code and unknown method share one public message; reasons stay internal."""
        await enable_totp(principal.id)

        with pytest.raises(MFAVerificationFailed) as wrong:
            await mfa.verify(principal.id, "badcode", context)
        with pytest.raises(MFAVerificationFailed) as missing:
            await mfa.verify(principal.id, "123456", context, method_id="mfa_does_not_exist")

        assert wrong.value.message == missing.value.message
        assert wrong.value.reason == "invalid_code"
        assert missing.value.reason == "config_not_found"

    async def test_attempts_are_logged_with_hashed_codes(self, mfa, store, principal, enable_totp, context):
        """Every attempt lands in the log without the plaintext code."""
        await enable_totp(principal.id)
        with pytest.raises(MFAVerificationFailed):
            await mfa.verify(principal.id, "badcode", context)

        failure = store.mfa_attempts[-1]
        assert failure.success is False
        assert failure.failure_reason == "invalid_code"
        assert "badcode" not in failure.code_hash
        assert failure.ip_addr == context.ip_addr

    async def test_sixth_attempt_is_rate_limited_even_if_correct(
        self, mfa, store, principal, enable_totp, totp_now, context
    ):
        """Five failures in the window block the sixth attempt regardless of the code."""
        enrollment, _ = await enable_totp(principal.id)
        for _ in range(5):
            with pytest.raises(MFAVerificationFailed):
                await mfa.verify(principal.id, "badcode", context)

        with pytest.raises(RateLimited) as exc_info:
            await mfa.verify(principal.id, totp_now(enrollment.secret), context)

        assert exc_info.value.retry_after > 0
        assert any(e.type == RiskEventType.RATE_LIMIT for e in store.risk_events)

    async def test_rate_limit_is_per_ip(self, mfa, principal, enable_totp, totp_now, context):
        """Failures from one IP do not block the same principal elsewhere."""
        enrollment, _ = await enable_totp(principal.id)
        for _ in range(5):
            with pytest.raises(MFAVerificationFailed):
                await mfa.verify(principal.id, "badcode", context)

        other = RequestContext(ip_addr="192.0.2.44", user_agent=context.user_agent)
        result = await mfa.verify(principal.id, totp_now(enrollment.secret), other)
        assert result.method == MFAMethodType.TOTP

    async def test_rate_limit_window_slides(self, mfa, clock, principal, enable_totp, totp_now, context):
        """Once the window passes, verification is possible again."""
        enrollment, _ = await enable_totp(principal.id)
        for _ in range(5):
            with pytest.raises(MFAVerificationFailed):
                await mfa.verify(principal.id, "badcode", context)
        clock.advance(minutes=16)

        result = await mfa.verify(principal.id, totp_now(enrollment.secret), context)
        assert result.method == MFAMethodType.TOTP

    @pytest.mark.interleaved
    async def test_concurrent_guesses_share_one_budget(self, mfa, store, principal, enable_totp, context):
        """Codes submitted at once cannot outrun the failure window."""
        await enable_totp(principal.id)

        results = await asyncio.gather(
            *(mfa.verify(principal.id, f"bad{i:03d}", context) for i in range(50)),
            return_exceptions=True,
        )

        evaluated = [r for r in results if isinstance(r, MFAVerificationFailed)]
        limited = [r for r in results if isinstance(r, RateLimited)]
        assert len(evaluated) == 5
        assert len(limited) == 45
        assert all(r.retry_after > 0 for r in limited)
        failures = [a for a in store.mfa_attempts if not a.success and a.ip_addr == context.ip_addr]
        assert len(failures) == 5

    @pytest.mark.interleaved
    async def test_concurrent_enrollment_guesses_share_one_budget(self, mfa, principal, context):
        enrollment = await mfa.enroll_totp(principal.id, "alice@example.com")

        results = await asyncio.gather(
            *(
                mfa.confirm_enrollment(principal.id, enrollment.method_id, f"bad{i:03d}", context)
                for i in range(20)
            ),
            return_exceptions=True,
        )

        assert sum(isinstance(r, MFAVerificationFailed) for r in results) == 5
        assert sum(isinstance(r, RateLimited) for r in results) == 15

    async def test_confirmed_enrollment_clears_window(self, mfa, principal, totp_now, context):
        """A successful confirmation resets the failure budget for that IP."""
        enrollment = await mfa.enroll_totp(principal.id, "alice@example.com")
        for _ in range(4):
            with pytest.raises(MFAVerificationFailed):
                await mfa.confirm_enrollment(principal.id, enrollment.method_id, "badcode", context)
        await mfa.confirm_enrollment(
            principal.id, enrollment.method_id, totp_now(enrollment.secret), context
        )

        for _ in range(5):
            with pytest.raises(MFAVerificationFailed):
                await mfa.verify(principal.id, "badcode", context)
        with pytest.raises(RateLimited):
            await mfa.verify(principal.id, "badcode", context)

    @pytest.mark.interleaved
    async def test_backup_code_consumed_once_under_concurrency(self, mfa, principal, enable_totp, context):
        """N concurrent attempts with one backup code succeed exactly once."""
        _, enrolled = await enable_totp(principal.id)
        code = enrolled.backup_codes[0]

        results = await asyncio.gather(
            *(mfa.verify(principal.id, code, context, is_backup=True) for _ in range(5)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, MFAVerificationFailed)]
        assert len(successes) == 1
        assert len(failures) == 4
        assert successes[0].remaining_backup_codes == 9

    async def test_backup_code_accepts_formatting(self, mfa, principal, enable_totp, context):
        """Lower case and separators are normalised before lookup."""
        _, enrolled = await enable_totp(principal.id)
        code = enrolled.backup_codes[1]
        formatted = f"{code[:4].lower()}-{code[4:].lower()}"

        result = await mfa.verify(principal.id, formatted, context, is_backup=True)

        assert result.method == MFAMethodType.BACKUP_CODES

    async def test_regenerated_codes_replace_old_ones(self, mfa, principal, enable_totp, context):
        """Old backup codes stop working once new ones are generated."""
        _, enrolled = await enable_totp(principal.id)
        fresh = await mfa.regenerate_backup_codes(principal.id)

        with pytest.raises(MFAVerificationFailed):
            await mfa.verify(principal.id, enrolled.backup_codes[0], context, is_backup=True)
        result = await mfa.verify(principal.id, fresh[0], context, is_backup=True)
        assert result.remaining_backup_codes == 9

    async def test_sms_code_single_use(self, mfa, principal, notifier, context):
        """A delivered OTP verifies once and wrong guesses do not burn it."""
        method = await mfa.enroll_sms(principal.id, "+15550101234")
        await mfa.challenge(principal.id, method.id, context)
        await mfa.confirm_enrollment(principal.id, method.id, notifier.last_code, context)

        await mfa.challenge(principal.id, method.id, context)
        code = notifier.last_code
        with pytest.raises(MFAVerificationFailed):
            await mfa.verify(principal.id, "badcode", context, method_id=method.id)
        await mfa.verify(principal.id, code, context, method_id=method.id)
        with pytest.raises(MFAVerificationFailed):
            await mfa.verify(principal.id, code, context, method_id=method.id)

    async def test_sms_code_expires(self, mfa, clock, settings, principal, notifier, context):
        """OTP codes stop working after their TTL."""
        method = await mfa.enroll_sms(principal.id, "+15550101234")
        await mfa.challenge(principal.id, method.id, context)
        await mfa.confirm_enrollment(principal.id, method.id, notifier.last_code, context)
        await mfa.challenge(principal.id, method.id, context)
        clock.advance(minutes=settings.mfa_otp_ttl_minutes, seconds=1)

        with pytest.raises(MFAVerificationFailed):
            await mfa.verify(principal.id, notifier.last_code, context, method_id=method.id)

    async def test_totp_challenge_has_no_side_effect(self, mfa, principal, enable_totp, notifier, context):
        """TOTP challenges return a reference without contacting the notifier."""
        await enable_totp(principal.id)
        sent = len(notifier.messages)

        challenge = await mfa.challenge(principal.id, context=context)

        assert challenge.method == MFAMethodType.TOTP
        assert challenge.reference
        assert len(notifier.messages) == sent


class TestRecency:
    async def test_recent_verification_window(self, mfa, sessions, clock, principal, settings):
        """Step-up satisfies sensitive operations only inside the recency window."""
        session = await _pending_session(sessions, clock, principal.id)
        verified = await sessions.mark_step_up_complete(session.id, StepUpVia.EXPLICIT)

        assert mfa.is_recently_verified(verified) is True
        mfa.require_recent(verified)

        clock.advance(minutes=settings.mfa_recent_window_minutes, seconds=1)
        assert mfa.is_recently_verified(verified) is False
        with pytest.raises(MFARequired):
            mfa.require_recent(verified)

    async def test_unverified_session_is_never_recent(self, mfa, sessions, clock, principal):
        """A session without step-up fails the recency check."""
        session = await _pending_session(sessions, clock, principal.id)

        assert mfa.is_recently_verified(session) is False
        with pytest.raises(MFARequired):
            mfa.require_recent(session)
