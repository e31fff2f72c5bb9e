import pytest
from pydantic import ValidationError

from custodian.config import Settings, get_settings, reset_settings_cache
from custodian.service import runtime as runtime_module
from custodian.service.notifier import LoggingNotifier, WebhookNotifier
from custodian.service.runtime import Runtime, _mask_url_password, get_runtime, reset_runtime_for_tests
from custodian.storage.memory_cache import MemoryCache


class TestSettingsValidation:
    def test_short_secret_rejected(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(jwt_secret="too-short")

    def test_missing_secret_rejected_outside_test_mode(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(test_mode=False, session_encryption_key=None)

    def test_ephemeral_secrets_in_test_mode(self):
        """TEST_MODE fills missing secrets with distinct random values."""
        settings = Settings(test_mode=True)

        assert len(settings.jwt_secret) >= 32
        assert settings.jwt_secret != settings.jwt_refresh_secret
        assert settings.session_encryption_key
        assert settings.mfa_encryption_key

    def test_identical_signing_secrets_rejected(self, settings_factory):
        shared = "x" * 40
        with pytest.raises(ValidationError):
            settings_factory(jwt_secret=shared, jwt_refresh_secret=shared)

    def test_thresholds_must_increase(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(risk_threshold_medium=80, risk_threshold_high=75)

    def test_absolute_ttl_not_below_idle(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(session_idle_ttl_minutes=120, session_absolute_ttl_minutes=60)

    def test_retry_budget_bounded(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(store_retry_budget=5)


class TestEnvironment:
    def test_from_env_reads_variables(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("MFA_ISSUER", "Acme Wallet")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 5
        assert settings.mfa_issuer == "Acme Wallet"

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("LOCKOUT_MINUTES", "45")
        reset_settings_cache()

        assert get_settings().lockout_minutes == 45


class TestRuntime:
    def test_memory_cache_runtime(self, settings, clock):
        runtime = Runtime(settings, clock)

        assert isinstance(runtime.cache, MemoryCache)
        assert runtime.auth.sessions is runtime.sessions
        assert runtime.mfa.cache is runtime.cache

    def test_missing_redis_falls_back_in_test_mode(self, settings_factory, clock):
        runtime = Runtime(settings_factory(use_memory_cache=False, redis_url=None), clock)

        assert isinstance(runtime.cache, MemoryCache)

    def test_missing_redis_is_fatal_in_production(self, settings_factory, clock):
        settings = settings_factory(use_memory_cache=False, redis_url=None, test_mode=False)

        with pytest.raises(RuntimeError):
            Runtime(settings, clock)

    def test_logging_notifier_only_outside_production(self, settings_factory, clock):
        """Without a webhook, one-time codes are only ever logged in test or dev mode."""
        assert isinstance(Runtime(settings_factory(), clock).notifier, LoggingNotifier)

        production = settings_factory(
            test_mode=False, allow_redis_fallback_dev=False, notifier_webhook_url=None
        )
        with pytest.raises(RuntimeError):
            Runtime(production, clock)

    def test_webhook_notifier_in_production(self, settings_factory, clock):
        settings = settings_factory(test_mode=False, notifier_webhook_url="https://gateway.test/otp")

        assert isinstance(Runtime(settings, clock).notifier, WebhookNotifier)

    def test_reset_runtime_for_tests(self, monkeypatch):
        monkeypatch.setattr(runtime_module, "runtime", None)

        rebuilt = reset_runtime_for_tests()

        assert get_runtime() is rebuilt
        assert isinstance(rebuilt.cache, MemoryCache)

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None
