from __future__ import annotations

import bisect
import copy
import threading
from typing import Any, Dict, List, Optional, Tuple

from custodian.clock import Clock, SystemClock
from custodian.storage.common import (
    SWAP_MISMATCH,
    SWAP_MISSING,
    SWAP_OK,
    SWAP_REVOKED,
)


class MemoryCache:
    """In-process ``SessionCache`` for tests and single-node development.

    Expiry is evaluated lazily against the injected clock so TTL behaviour can
    be driven deterministically. Every method finishes its critical section
    without awaiting, which makes the compare-and-swap and claim operations
    atomic for coroutines sharing an event loop.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._indexes: Dict[str, Dict[str, float]] = {}
        self._windows: Dict[str, List[float]] = {}

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def _get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        expires_at = (
            self._now() + max(1, int(ttl_seconds)) if ttl_seconds is not None else None
        )
        self._values[key] = (value, expires_at)

    # -- sessions ---------------------------------------------------------

    async def put_session(
        self, session_id: str, blob: str, ttl_seconds: int, *, existing_only: bool = False
    ) -> bool:
        key = f"auth:session:{session_id}"
        with self._lock:
            if existing_only and self._get(key) is None:
                return False
            self._set(key, blob, ttl_seconds)
            return True

    async def get_session(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._get(f"auth:session:{session_id}")

    async def delete_session(self, session_id: str) -> bool:
        with self._lock:
            existed = self._get(f"auth:session:{session_id}") is not None
            self._values.pop(f"auth:session:{session_id}", None)
            return existed

    async def index_session(
        self, principal_id: str, session_id: str, last_access: float, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._indexes.setdefault(principal_id, {})[session_id] = last_access

    async def indexed_sessions(self, principal_id: str) -> List[Tuple[str, float]]:
        with self._lock:
            entries = list(self._indexes.get(principal_id, {}).items())
        return sorted(entries, key=lambda item: (item[1], item[0]))

    async def unindex_session(self, principal_id: str, session_id: str) -> None:
        with self._lock:
            index = self._indexes.get(principal_id)
            if index is not None:
                index.pop(session_id, None)
                if not index:
                    self._indexes.pop(principal_id, None)

    # -- token families ---------------------------------------------------

    async def set_family(
        self,
        family_id: str,
        refresh_hash: str,
        access_jti: str,
        access_exp: int,
        ttl_seconds: int,
    ) -> None:
        record = {"current": refresh_hash, "access_jti": access_jti, "access_exp": str(access_exp)}
        with self._lock:
            self._set(f"auth:family:{family_id}", record, ttl_seconds)

    async def swap_family(
        self,
        family_id: str,
        expected_hash: str,
        new_hash: str,
        access_jti: str,
        access_exp: int,
        ttl_seconds: int,
    ) -> str:
        with self._lock:
            if self._get(f"auth:family:revoked:{family_id}") is not None:
                return SWAP_REVOKED
            record = self._get(f"auth:family:{family_id}")
            if record is None:
                return SWAP_MISSING
            if record["current"] != expected_hash:
                return SWAP_MISMATCH
            updated = {
                "current": new_hash,
                "access_jti": access_jti,
                "access_exp": str(access_exp),
            }
            self._set(f"auth:family:{family_id}", updated, ttl_seconds)
            return SWAP_OK

    async def get_family(self, family_id: str) -> Optional[Dict[str, str]]:
        with self._lock:
            record = self._get(f"auth:family:{family_id}")
            return dict(record) if record else None

    async def revoke_family(
        self, family_id: str, reason: str, ttl_seconds: int
    ) -> Optional[Dict[str, str]]:
        with self._lock:
            record = self._get(f"auth:family:{family_id}")
            if self._get(f"auth:family:revoked:{family_id}") is None:
                self._set(f"auth:family:revoked:{family_id}", reason, ttl_seconds)
            self._values.pop(f"auth:family:{family_id}", None)
            return dict(record) if record else None

    async def family_revocation(self, family_id: str) -> Optional[str]:
        with self._lock:
            return self._get(f"auth:family:revoked:{family_id}")

    async def denylist(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._set(f"auth:access:denylist:{jti}", "1", ttl_seconds)

    async def access_revoked(self, jti: str, family_id: str) -> bool:
        with self._lock:
            return (
                self._get(f"auth:access:denylist:{jti}") is not None
                or self._get(f"auth:family:revoked:{family_id}") is not None
            )

    # -- sliding windows --------------------------------------------------

    def _trim(self, key: str, now: float, window_seconds: int) -> List[float]:
        hits = self._windows.setdefault(key, [])
        cutoff = now - window_seconds
        drop = bisect.bisect_right(hits, cutoff)
        if drop:
            del hits[:drop]
        return hits

    async def reserve_hit(
        self, key: str, now: float, window_seconds: int, limit: int
    ) -> Tuple[bool, int, Optional[float]]:
        with self._lock:
            hits = self._trim(key, now, window_seconds)
            if len(hits) >= limit:
                return False, len(hits), (hits[0] if hits else None)
            bisect.insort(hits, now)
            return True, len(hits), None

    async def clear_hits(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    # -- generic keys -----------------------------------------------------

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._get(key) is not None:
                return False
            self._set(key, "1", ttl_seconds)
            return True

    async def put_value(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(key, value, ttl_seconds)

    async def take_value(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._get(key)
            self._values.pop(key, None)
            return value

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._get(key)
            return copy.deepcopy(value) if value is not None else None

    async def set_json(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._set(key, copy.deepcopy(payload), ttl_seconds)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._indexes.clear()
            self._windows.clear()


__all__ = ["MemoryCache"]
