from __future__ import annotations

import asyncio
import json
import secrets
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from custodian.logging import get_logger
from custodian.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


class RedisCache:
    """Redis-backed ``SessionCache``: session blobs, token families, counters.

    Every round trip is bounded by ``operation_timeout``. Idempotent reads and
    writes are retried up to ``retry_budget`` times; compare-and-swap and
    claim operations are never retried because a timed out attempt may
    already have been applied.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # KEYS: family hash, revocation marker
    # ARGV: expected hash, new hash, access jti, access exp, ttl
    _SWAP_FAMILY_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then
  return 'revoked'
end
local current = redis.call('HGET', KEYS[1], 'current')
if not current then
  return 'missing'
end
if current ~= ARGV[1] then
  return 'mismatch'
end
redis.call('HSET', KEYS[1], 'current', ARGV[2], 'access_jti', ARGV[3], 'access_exp', ARGV[4])
redis.call('EXPIRE', KEYS[1], ARGV[5])
return 'ok'
"""

    # KEYS: family hash, revocation marker
    # ARGV: reason, ttl
    _REVOKE_FAMILY_SCRIPT = """
local record = redis.call('HGETALL', KEYS[1])
redis.call('SET', KEYS[2], ARGV[1], 'NX', 'EX', ARGV[2])
redis.call('DEL', KEYS[1])
return record
"""

    # KEYS: window zset; ARGV: now, window seconds, limit, member
    _RESERVE_HIT_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
local count = redis.call('ZCARD', KEYS[1])
if count >= tonumber(ARGV[3]) then
  local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
  return {0, count, oldest[2] or false}
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('EXPIRE', KEYS[1], math.max(math.ceil(window), 1))
return {1, count + 1, false}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retry_budget: int = 1,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.retry_budget = retry_budget
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._swap_family = self.client.register_script(self._SWAP_FAMILY_SCRIPT)
        self._revoke_family = self.client.register_script(self._REVOKE_FAMILY_SCRIPT)
        self._reserve_hit = self.client.register_script(self._RESERVE_HIT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        retry: bool = True,
    ) -> T:
        attempts = 1 + (self.retry_budget if retry else 0)
        last_error: Optional[BaseException] = None
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(call(), timeout=self.operation_timeout)
            except (asyncio.TimeoutError, RedisTimeoutError, RedisConnectionError) as exc:
                last_error = exc
                logger.warning(
                    "session_cache_call_failed",
                    operation=operation,
                    attempt=attempt + 1,
                    error_type=type(exc).__name__,
                )
        raise StoreUnavailable(operation, last_error)

    # -- sessions ---------------------------------------------------------

    async def put_session(
        self, session_id: str, blob: str, ttl_seconds: int, *, existing_only: bool = False
    ) -> bool:
        stored = await self._run(
            "put_session",
            lambda: self.client.set(
                f"auth:session:{session_id}", blob, ex=max(1, ttl_seconds), xx=existing_only
            ),
        )
        return bool(stored)

    async def get_session(self, session_id: str) -> Optional[str]:
        return await self._run(
            "get_session", lambda: self.client.get(f"auth:session:{session_id}")
        )

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self._run(
            "delete_session", lambda: self.client.delete(f"auth:session:{session_id}")
        )
        return bool(deleted)

    async def index_session(
        self, principal_id: str, session_id: str, last_access: float, ttl_seconds: int
    ) -> None:
        key = f"auth:user_sessions:{principal_id}"

        async def _index() -> None:
            pipe = self.client.pipeline()
            pipe.zadd(key, {session_id: last_access})
            # The index outlives its longest member; stale members are pruned on read
            pipe.expire(key, max(1, ttl_seconds), gt=True)
            pipe.expire(key, max(1, ttl_seconds), nx=True)
            await pipe.execute()

        await self._run("index_session", _index)

    async def indexed_sessions(self, principal_id: str) -> List[Tuple[str, float]]:
        entries = await self._run(
            "indexed_sessions",
            lambda: self.client.zrange(
                f"auth:user_sessions:{principal_id}", 0, -1, withscores=True
            ),
        )
        return [(member, float(score)) for member, score in entries]

    async def unindex_session(self, principal_id: str, session_id: str) -> None:
        await self._run(
            "unindex_session",
            lambda: self.client.zrem(f"auth:user_sessions:{principal_id}", session_id),
        )

    # -- token families ---------------------------------------------------

    async def set_family(
        self,
        family_id: str,
        refresh_hash: str,
        access_jti: str,
        access_exp: int,
        ttl_seconds: int,
    ) -> None:
        key = f"auth:family:{family_id}"

        async def _set() -> None:
            pipe = self.client.pipeline()
            pipe.hset(
                key,
                mapping={
                    "current": refresh_hash,
                    "access_jti": access_jti,
                    "access_exp": str(access_exp),
                },
            )
            pipe.expire(key, max(1, ttl_seconds))
            await pipe.execute()

        await self._run("set_family", _set)

    async def swap_family(
        self,
        family_id: str,
        expected_hash: str,
        new_hash: str,
        access_jti: str,
        access_exp: int,
        ttl_seconds: int,
    ) -> str:
        return await self._run(
            "swap_family",
            lambda: self._swap_family(
                keys=[f"auth:family:{family_id}", f"auth:family:revoked:{family_id}"],
                args=[expected_hash, new_hash, access_jti, access_exp, max(1, ttl_seconds)],
            ),
            retry=False,
        )

    async def get_family(self, family_id: str) -> Optional[Dict[str, str]]:
        record = await self._run(
            "get_family", lambda: self.client.hgetall(f"auth:family:{family_id}")
        )
        return record or None

    async def revoke_family(
        self, family_id: str, reason: str, ttl_seconds: int
    ) -> Optional[Dict[str, str]]:
        flat = await self._run(
            "revoke_family",
            lambda: self._revoke_family(
                keys=[f"auth:family:{family_id}", f"auth:family:revoked:{family_id}"],
                args=[reason, max(1, ttl_seconds)],
            ),
        )
        if not flat:
            return None
        return dict(zip(flat[0::2], flat[1::2]))

    async def family_revocation(self, family_id: str) -> Optional[str]:
        return await self._run(
            "family_revocation",
            lambda: self.client.get(f"auth:family:revoked:{family_id}"),
        )

    async def denylist(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self._run(
            "denylist",
            lambda: self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds),
        )

    async def access_revoked(self, jti: str, family_id: str) -> bool:
        hits = await self._run(
            "access_revoked",
            lambda: self.client.exists(
                f"auth:access:denylist:{jti}", f"auth:family:revoked:{family_id}"
            ),
        )
        return bool(hits)

    # -- sliding windows --------------------------------------------------

    async def reserve_hit(
        self, key: str, now: float, window_seconds: int, limit: int
    ) -> Tuple[bool, int, Optional[float]]:
        member = f"{now:.6f}:{secrets.token_hex(4)}"
        admitted, count, oldest = await self._run(
            "reserve_hit",
            lambda: self._reserve_hit(
                keys=[f"window:{key}"], args=[now, window_seconds, limit, member]
            ),
            retry=False,
        )
        return bool(int(admitted)), int(count), (float(oldest) if oldest else None)

    async def clear_hits(self, key: str) -> None:
        await self._run("clear_hits", lambda: self.client.delete(f"window:{key}"))

    # -- generic keys -----------------------------------------------------

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        claimed = await self._run(
            "claim",
            lambda: self.client.set(key, "1", nx=True, ex=max(1, ttl_seconds)),
            retry=False,
        )
        return bool(claimed)

    async def put_value(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run(
            "put_value", lambda: self.client.set(key, value, ex=max(1, ttl_seconds))
        )

    async def take_value(self, key: str) -> Optional[str]:
        return await self._run("take_value", lambda: self.client.getdel(key), retry=False)

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._run("get_json", lambda: self.client.get(key))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("session_cache_json_invalid", key=key)
            return None

    async def set_json(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        await self._run(
            "set_json",
            lambda: self.client.set(key, json.dumps(payload), ex=max(1, ttl_seconds)),
        )

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisCache"]
