from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from custodian.clock import Clock
from custodian.config import Settings
from custodian.logging import get_logger
from custodian.service.errors import SessionNotFound
from custodian.service.tokens import TokenService
from custodian.storage.common import SessionCache
from custodian.storage.errors import Corrupt
from custodian.storage.models import Session, StepUpVia

logger = get_logger(__name__)

# Fields callers may change through touch(); identity and lifetime bounds are fixed
_TOUCHABLE = {
    "ip_addr",
    "user_agent",
    "device_fingerprint",
    "scope",
    "suspicious",
    "risk_score",
    "meta",
}


class SessionStore:
    """Encrypted, TTL-bound session records with a per-principal LRU index.

    Payloads are sealed with Fernet (AES-CBC + HMAC, random IV per write), so
    identical sessions never share a ciphertext and tampering is detected on
    read. A record that fails to open is treated exactly like a missing one.
    """

    def __init__(
        self,
        cache: SessionCache,
        tokens: TokenService,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.cache = cache
        self.tokens = tokens
        self.settings = settings
        self.clock = clock
        self._cipher = Fernet(self._derive_cipher_key(settings.session_encryption_key or ""))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        if not key_material:
            raise RuntimeError("Session encryption key is required")
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _seal(self, session: Session) -> str:
        return self._cipher.encrypt(json.dumps(session.to_payload()).encode()).decode()

    def _open(self, session_id: str, blob: str) -> Session:
        try:
            raw = self._cipher.decrypt(blob.encode())
            session = Session.from_payload(json.loads(raw))
        except (InvalidToken, ValueError, TypeError, KeyError) as exc:
            raise Corrupt(session_id) from exc
        if session.id != session_id:
            raise Corrupt(session_id)
        return session

    def _ttl_seconds(self, session: Session, now: datetime) -> int:
        return int((session.expires_at - now).total_seconds())

    def _index_ttl(self, session: Session, now: datetime) -> int:
        return max(1, int((session.absolute_expires_at - now).total_seconds()))

    async def _write(self, session: Session, now: datetime, *, existing_only: bool = False) -> bool:
        stored = await self.cache.put_session(
            session.id,
            self._seal(session),
            self._ttl_seconds(session, now),
            existing_only=existing_only,
        )
        if not stored:
            return False
        await self.cache.index_session(
            session.principal_id,
            session.id,
            session.last_access_at.timestamp(),
            self._index_ttl(session, now),
        )
        return True

    async def create(self, session: Session) -> str:
        now = self.clock.now()
        if session.expires_at <= now:
            raise ValueError("cannot persist an already expired session")
        await self._write(session, now)
        logger.info(
            "session_created",
            session_id=session.id,
            principal_id=session.principal_id,
            mfa_required=session.mfa_required,
        )
        await self._enforce_concurrency(session.principal_id, keep=session.id)
        return session.id

    async def _enforce_concurrency(self, principal_id: str, keep: str) -> None:
        live: List[str] = []
        for session_id, _last_access in await self.cache.indexed_sessions(principal_id):
            if await self.get(session_id) is None:
                await self.cache.unindex_session(principal_id, session_id)
                continue
            live.append(session_id)
        # indexed_sessions is ordered least recently used first
        excess = len(live) - self.settings.max_concurrent_sessions
        for session_id in live:
            if excess <= 0:
                break
            if session_id == keep:
                continue
            await self.revoke(session_id, reason="concurrent_session_limit")
            excess -= 1

    async def get(self, session_id: str) -> Optional[Session]:
        blob = await self.cache.get_session(session_id)
        if blob is None:
            return None
        try:
            session = self._open(session_id, blob)
        except Corrupt:
            logger.warning("session_corrupt", session_id=session_id)
            return None
        now = self.clock.now()
        if session.expires_at <= now or session.absolute_expires_at <= now:
            return None
        return session

    async def touch(self, session_id: str, **fields: Any) -> Optional[Session]:
        """Record activity: slide the idle TTL, never past the absolute lifetime.

        Updates carrying an older ``last_access_at`` than the stored record are
        ignored so that out-of-order writers cannot move the session backwards.
        """
        unknown = set(fields) - _TOUCHABLE - {"last_access_at"}
        if unknown:
            raise ValueError(f"cannot touch session fields: {sorted(unknown)}")
        session = await self.get(session_id)
        if session is None:
            return None
        now = self.clock.now()
        seen_at = fields.pop("last_access_at", None) or now
        if seen_at < session.last_access_at:
            return session
        idle = timedelta(minutes=self.settings.session_idle_ttl_minutes)
        updated = replace(
            session,
            last_access_at=seen_at,
            expires_at=min(seen_at + idle, session.absolute_expires_at),
            **fields,
        )
        if updated.expires_at <= now:
            await self.revoke(session_id, reason="expired")
            return None
        if not await self._write(updated, now, existing_only=True):
            return None
        return updated

    async def mark_step_up_complete(self, session_id: str, via: StepUpVia) -> Session:
        """Single place where a session becomes MFA-verified, for any proof."""
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFound(reason="step_up_session_missing")
        now = self.clock.now()
        updated = replace(
            session,
            mfa_verified=True,
            mfa_verified_at=now,
            mfa_via=via,
            last_access_at=max(now, session.last_access_at),
        )
        if not await self._write(updated, now, existing_only=True):
            raise SessionNotFound(reason="step_up_session_missing")
        logger.info(
            "session_step_up_complete",
            session_id=session_id,
            principal_id=session.principal_id,
            via=via.value,
        )
        return updated

    async def revoke(self, session_id: str, reason: str = "revoked") -> bool:
        blob = await self.cache.get_session(session_id)
        session: Optional[Session] = None
        if blob is not None:
            try:
                session = self._open(session_id, blob)
            except Corrupt:
                logger.warning("session_corrupt", session_id=session_id)
        existed = await self.cache.delete_session(session_id)
        if session is None:
            return existed
        await self.cache.unindex_session(session.principal_id, session_id)
        await self.tokens.revoke_family(session.family_id, reason=reason)
        logger.info(
            "session_revoked",
            session_id=session_id,
            principal_id=session.principal_id,
            reason=reason,
        )
        return existed

    async def revoke_all_for_principal(
        self, principal_id: str, exclude: Optional[str] = None, reason: str = "revoke_all"
    ) -> int:
        revoked = 0
        for session_id, _ in await self.cache.indexed_sessions(principal_id):
            if session_id == exclude:
                continue
            if await self.revoke(session_id, reason=reason):
                revoked += 1
            else:
                await self.cache.unindex_session(principal_id, session_id)
        return revoked

    async def list_for_principal(self, principal_id: str) -> List[Session]:
        sessions: List[Session] = []
        for session_id, _ in await self.cache.indexed_sessions(principal_id):
            session = await self.get(session_id)
            if session is None:
                await self.cache.unindex_session(principal_id, session_id)
                continue
            sessions.append(session)
        return sorted(sessions, key=lambda s: s.last_access_at, reverse=True)


__all__ = ["SessionStore"]
