from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from custodian.clock import Clock, SystemClock
from custodian.config import Settings, get_settings, reset_settings_cache
from custodian.logging import get_logger
from custodian.service.auth import AuthService
from custodian.service.devices import TrustedDeviceEvaluator
from custodian.service.mfa import MFAEngine
from custodian.service.notifier import LoggingNotifier, Notifier, WebhookNotifier
from custodian.service.risk import RiskEngine
from custodian.service.sessions import SessionStore
from custodian.service.tokens import TokenService
from custodian.storage.memory import MemoryStore
from custodian.storage.memory_cache import MemoryCache
from custodian.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the wired service graph for one process."""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(mfa_encryption_key=self.settings.mfa_encryption_key or "")
        self.cache = self._build_cache()
        self.notifier = self._build_notifier()

        self.risk = RiskEngine(self.store, self.store, self.cache, self.settings, self.clock)
        self.tokens = TokenService(self.cache, self.risk, self.settings, self.clock)
        self.sessions = SessionStore(self.cache, self.tokens, self.settings, self.clock)
        self.mfa = MFAEngine(
            self.store,
            self.store,
            self.cache,
            self.sessions,
            self.risk,
            self.notifier,
            self.settings,
            self.clock,
        )
        self.devices = TrustedDeviceEvaluator(
            self.store, self.store, self.sessions, self.risk, self.settings, self.clock
        )
        self.auth = AuthService(
            self.store,
            self.store,
            self.tokens,
            self.sessions,
            self.mfa,
            self.devices,
            self.risk,
            self.settings,
            self.clock,
        )
        logger.info(
            "runtime_init_complete",
            cache_type=type(self.cache).__name__,
            notifier_type=type(self.notifier).__name__,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        if self.settings.use_memory_cache:
            return MemoryCache(self.clock)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url,
                operation_timeout=self.settings.store_timeout_seconds,
                retry_budget=self.settings.store_retry_budget,
            )
            try:
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, token families and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCache(self.clock)

    def _build_notifier(self) -> Notifier:
        if self.settings.notifier_webhook_url:
            return WebhookNotifier(
                self.settings.notifier_webhook_url,
                api_key=self.settings.notifier_api_key,
                timeout=self.settings.notifier_timeout_seconds,
            )
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "NOTIFIER_WEBHOOK_URL is required to deliver one-time codes; "
                "set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to log them locally instead."
            )
        logger.warning("notifier_webhook_missing", fallback="logging")
        return LoggingNotifier()

    async def close(self) -> None:
        if isinstance(self.notifier, WebhookNotifier):
            await self.notifier.drain()
        await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime singleton from fresh settings; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    loop.create_task(runtime.cache.close())
                else:
                    asyncio.run(runtime.cache.close())
            except (RedisError, OSError) as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
