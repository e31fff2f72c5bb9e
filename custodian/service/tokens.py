from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from custodian.clock import Clock
from custodian.config import Settings
from custodian.logging import get_logger
from custodian.service.context import RequestContext
from custodian.service.errors import (
    InvalidToken,
    SigningError,
    TokenExpired,
    TokenFamilyCompromised,
    TokenRevoked,
)
from custodian.service.risk import RiskEngine, RiskSignal
from custodian.storage.common import (
    SWAP_MISMATCH,
    SWAP_OK,
    SWAP_REVOKED,
    SessionCache,
    hash_secret,
)
from custodian.storage.models import RiskEventType

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_jti: str
    refresh_jti: str
    family_id: str
    session_id: str
    token_type: str = "bearer"


@dataclass(frozen=True)
class Claims:
    principal_id: str
    session_id: str
    family_id: str
    jti: str
    scope: tuple
    token_type: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """Signs, validates, rotates and revokes bearer credentials.

    Refresh tokens of one login form a family. The session cache keeps a
    single pointer per family holding the hash of the one refresh token that
    may still be exchanged; rotation is a compare-and-swap on that pointer.
    """

    def __init__(
        self,
        cache: SessionCache,
        risk: RiskEngine,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.cache = cache
        self.risk = risk
        self.settings = settings
        self.clock = clock

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _secret_for(self, token_type: str) -> bytes:
        secret = (
            self.settings.jwt_secret if token_type == ACCESS else self.settings.jwt_refresh_secret
        )
        if not secret:
            raise SigningError("Token signing unavailable", reason=f"{token_type}_secret_missing")
        return secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidToken(reason="malformed")

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidToken(reason="header_undecodable")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidToken(reason="algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self._secret_for(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidToken(reason="signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken(reason="payload_undecodable")
        if not isinstance(payload, dict):
            raise InvalidToken(reason="payload_shape")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidToken(reason="issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidToken(reason="audience")
        if payload.get("token_type") != token_type:
            raise InvalidToken(reason="token_type")
        for claim in ("sub", "sid", "fam", "jti"):
            if not isinstance(payload.get(claim), str):
                raise InvalidToken(reason=f"missing_{claim}")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken(reason="exp")
        if exp_ts <= self.clock.now().timestamp():
            raise TokenExpired(reason=f"{token_type}_expired")
        return payload

    def _claims(self, payload: dict[str, Any]) -> Claims:
        return Claims(
            principal_id=payload["sub"],
            session_id=payload["sid"],
            family_id=payload["fam"],
            jti=payload["jti"],
            scope=tuple(payload.get("scope") or ()),
            token_type=payload["token_type"],
            issued_at=datetime.fromtimestamp(payload.get("iat", 0), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def _build_pair(
        self, principal_id: str, session_id: str, family_id: str, scope: Iterable[str]
    ) -> TokenPair:
        now = self.clock.now()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access_jti = uuid.uuid4().hex
        refresh_jti = uuid.uuid4().hex
        common = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal_id,
            "sid": session_id,
            "fam": family_id,
            "scope": sorted(set(scope)),
            "iat": int(now.timestamp()),
        }
        access_token = self._encode_jwt(
            {**common, "token_type": ACCESS, "jti": access_jti, "exp": int(access_exp.timestamp())},
            ACCESS,
        )
        refresh_token = self._encode_jwt(
            {
                **common,
                "token_type": REFRESH,
                "jti": refresh_jti,
                "exp": int(refresh_exp.timestamp()),
            },
            REFRESH,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=datetime.fromtimestamp(int(access_exp.timestamp()), tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(int(refresh_exp.timestamp()), tz=timezone.utc),
            access_jti=access_jti,
            refresh_jti=refresh_jti,
            family_id=family_id,
            session_id=session_id,
        )

    async def issue(
        self,
        principal_id: str,
        session_id: str,
        family_id: str,
        scope: Iterable[str] = (),
    ) -> TokenPair:
        """Issue a fresh pair and make its refresh token the family's only valid one."""
        pair = self._build_pair(principal_id, session_id, family_id, scope)
        await self.cache.set_family(
            family_id,
            hash_secret(pair.refresh_token),
            pair.access_jti,
            int(pair.access_expires_at.timestamp()),
            int(self.refresh_ttl.total_seconds()),
        )
        logger.info(
            "tokens_issued",
            principal_id=principal_id,
            session_id=session_id,
            family_id=family_id,
        )
        return pair

    async def validate_access(self, token: str) -> Claims:
        payload = self._decode_jwt(token, ACCESS)
        if await self.cache.access_revoked(payload["jti"], payload["fam"]):
            raise TokenRevoked(reason="access_revoked")
        return self._claims(payload)

    def peek_refresh(self, token: str) -> Claims:
        """Verify a refresh token's signature and expiry without consuming it."""
        return self._claims(self._decode_jwt(token, REFRESH))

    async def rotate_refresh(
        self, refresh_token: str, context: Optional[RequestContext] = None
    ) -> TokenPair:
        payload = self._decode_jwt(refresh_token, REFRESH)
        family_id = payload["fam"]
        pair = self._build_pair(
            payload["sub"], payload["sid"], family_id, payload.get("scope") or ()
        )
        outcome = await self.cache.swap_family(
            family_id,
            hash_secret(refresh_token),
            hash_secret(pair.refresh_token),
            pair.access_jti,
            int(pair.access_expires_at.timestamp()),
            int(self.refresh_ttl.total_seconds()),
        )
        if outcome == SWAP_OK:
            logger.info(
                "refresh_rotated",
                principal_id=payload["sub"],
                session_id=payload["sid"],
                family_id=family_id,
            )
            return pair
        if outcome == SWAP_MISMATCH:
            await self._handle_reuse(payload, context)
            raise TokenFamilyCompromised(reason="refresh_reuse")
        if outcome == SWAP_REVOKED:
            raise TokenRevoked(reason="family_revoked")
        raise TokenRevoked(reason="family_unknown")

    async def _handle_reuse(
        self, payload: dict[str, Any], context: Optional[RequestContext]
    ) -> None:
        family_id = payload["fam"]
        logger.error(
            "refresh_token_reuse_detected",
            principal_id=payload["sub"],
            session_id=payload["sid"],
            family_id=family_id,
        )
        await self.revoke_family(family_id, reason="refresh_reuse")
        await self.risk.record(
            RiskSignal(
                type=RiskEventType.TOKEN_REUSE,
                occurred_at=self.clock.now(),
                ip_addr=context.ip_addr if context else None,
                user_agent=context.user_agent if context else None,
                principal_id=payload["sub"],
                details={"family_id": family_id, "session_id": payload["sid"]},
            )
        )

    async def revoke_family(self, family_id: str, reason: str = "revoked") -> bool:
        """Revoke every token of ``family_id``; returns False if it was already gone."""
        record = await self.cache.revoke_family(
            family_id, reason, int(self.refresh_ttl.total_seconds())
        )
        if not record:
            return False
        access_jti = record.get("access_jti")
        access_exp = record.get("access_exp")
        if access_jti and access_exp:
            await self.revoke_token(access_jti, int(access_exp))
        logger.info("token_family_revoked", family_id=family_id, reason=reason)
        return True

    async def revoke_token(self, jti: str, expires_at: datetime | int) -> None:
        exp_ts = expires_at if isinstance(expires_at, int) else int(expires_at.timestamp())
        ttl = exp_ts - int(self.clock.now().timestamp())
        await self.cache.denylist(jti, ttl)


__all__ = ["Claims", "TokenPair", "TokenService"]
