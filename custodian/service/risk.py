"""Additive risk scoring over IP, principal, time and device signals.

Each category is computed independently and the IP / principal categories
are cached briefly in the session cache to bound load on the signal store.
Every time-dependent input is derived from the signal's own timestamp, so
scoring the same signal against the same store snapshot always yields the
same assessment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from custodian.clock import Clock
from custodian.config import Settings
from custodian.logging import get_audit_logger, get_logger
from custodian.storage.common import CredentialStore, RiskSignalStore, SessionCache
from custodian.storage.models import (
    PrincipalStatus,
    RiskAction,
    RiskEvent,
    RiskEventType,
    RiskLevel,
)

logger = get_logger(__name__)
audit = get_audit_logger()

BASE_WEIGHTS: Dict[RiskEventType, int] = {
    RiskEventType.LOGIN: 10,
    RiskEventType.FAILED_AUTH: 25,
    RiskEventType.MFA_SETUP: 15,
    RiskEventType.MFA_VERIFY: 5,
    RiskEventType.PASSWORD_CHANGE: 20,
    RiskEventType.SUSPICIOUS_ACTIVITY: 50,
    RiskEventType.RATE_LIMIT: 30,
    RiskEventType.TOKEN_REUSE: 90,
    RiskEventType.TRUSTED_DEVICE: 5,
}

ACTION_BY_LEVEL: Dict[RiskLevel, RiskAction] = {
    RiskLevel.LOW: RiskAction.ALLOW,
    RiskLevel.MEDIUM: RiskAction.STEP_UP,
    RiskLevel.HIGH: RiskAction.THROTTLE,
    RiskLevel.CRITICAL: RiskAction.BLOCK,
}

RECOMMENDATIONS: Dict[RiskLevel, List[str]] = {
    RiskLevel.LOW: ["Continue normal processing"],
    RiskLevel.MEDIUM: ["Require additional verification", "Monitor session activity"],
    RiskLevel.HIGH: [
        "Require multi-factor authentication",
        "Throttle requests from this source",
        "Send security alert to the account owner",
    ],
    RiskLevel.CRITICAL: [
        "Block the request",
        "Lock the account temporarily",
        "Alert the security team",
    ],
}

BOT_PATTERN = re.compile(r"bot|crawler|spider|scraper|curl|wget|python|java", re.IGNORECASE)
LEGACY_BROWSER_PATTERN = re.compile(r"MSIE|Trident", re.IGNORECASE)


@dataclass(frozen=True)
class RiskSignal:
    type: RiskEventType
    occurred_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    principal_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RiskFactor:
    category: str
    points: int
    reason: str

    def as_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "points": self.points, "reason": self.reason}


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: RiskLevel
    action: RiskAction
    factors: List[RiskFactor]
    blocked: bool
    recommendations: List[str]


@dataclass(frozen=True)
class BlockDecision:
    blocked: bool
    reason: Optional[str] = None
    unblock_at: Optional[datetime] = None

    def retry_after(self, now: datetime) -> Optional[int]:
        if self.unblock_at is None:
            return None
        return max(1, int((self.unblock_at - now).total_seconds()))


def classify(score: int, settings: Settings) -> RiskLevel:
    if score >= settings.risk_threshold_critical:
        return RiskLevel.CRITICAL
    if score >= settings.risk_threshold_high:
        return RiskLevel.HIGH
    if score >= settings.risk_threshold_medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def time_factors(moment: datetime, tz: ZoneInfo, enabled: bool = True) -> List[RiskFactor]:
    if not enabled:
        return []
    local = moment.astimezone(tz)
    factors: List[RiskFactor] = []
    if 1 <= local.hour <= 5:
        factors.append(RiskFactor("time", 10, "Late night activity"))
    if local.weekday() >= 5:
        factors.append(RiskFactor("time", 5, "Weekend activity"))
    return factors


def device_factors(user_agent: Optional[str]) -> List[RiskFactor]:
    if not user_agent or len(user_agent) < 10:
        return [RiskFactor("device", 20, "Missing or malformed user agent")]
    factors: List[RiskFactor] = []
    if BOT_PATTERN.search(user_agent):
        factors.append(RiskFactor("device", 30, "Automated client detected"))
    if LEGACY_BROWSER_PATTERN.search(user_agent):
        factors.append(RiskFactor("device", 15, "Legacy browser detected"))
    return factors


def _from_cache(payload: Optional[Dict[str, Any]]) -> Optional[List[RiskFactor]]:
    if not payload or not isinstance(payload.get("factors"), list):
        return None
    return [
        RiskFactor(item["category"], int(item["points"]), item["reason"])
        for item in payload["factors"]
    ]


class RiskEngine:
    def __init__(
        self,
        store: CredentialStore,
        signals: RiskSignalStore,
        cache: SessionCache,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.store = store
        self.signals = signals
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self._tz = ZoneInfo(settings.risk_timezone)

    async def score(self, signal: RiskSignal) -> RiskAssessment:
        factors = [
            RiskFactor(
                "event",
                BASE_WEIGHTS.get(signal.type, 10),
                f"Base weight for {signal.type.value}",
            )
        ]
        if signal.ip_addr:
            factors.extend(await self._ip_factors(signal.ip_addr, signal.occurred_at))
        if signal.principal_id:
            factors.extend(await self._principal_factors(signal))
        factors.extend(
            time_factors(signal.occurred_at, self._tz, self.settings.risk_unusual_hours_enabled)
        )
        factors.extend(device_factors(signal.user_agent))

        total = min(100, sum(f.points for f in factors))
        level = classify(total, self.settings)
        return RiskAssessment(
            score=total,
            level=level,
            action=ACTION_BY_LEVEL[level],
            factors=factors,
            blocked=level is RiskLevel.CRITICAL,
            recommendations=list(RECOMMENDATIONS[level]),
        )

    async def record(self, signal: RiskSignal) -> RiskAssessment:
        """Score ``signal`` and append it to the immutable risk-event log."""
        assessment = await self.score(signal)
        event = RiskEvent(
            id=RiskEvent.new_id(),
            type=signal.type,
            principal_id=signal.principal_id,
            ip_addr=signal.ip_addr,
            user_agent=signal.user_agent,
            score=assessment.score,
            blocked=assessment.blocked,
            created_at=signal.occurred_at,
            factors=tuple(f.reason for f in assessment.factors),
            details=dict(signal.details),
        )
        await self.signals.append_risk_event(event)
        log = audit.warning if assessment.level in (RiskLevel.HIGH, RiskLevel.CRITICAL) else audit.info
        log(
            "security_event",
            event_type=signal.type.value,
            principal_id=signal.principal_id,
            ip_addr=signal.ip_addr,
            risk_score=assessment.score,
            risk_level=assessment.level.value,
            blocked=assessment.blocked,
            factors=[f.reason for f in assessment.factors],
            details=dict(signal.details),
        )
        return assessment

    async def _ip_factors(self, ip_addr: str, now: datetime) -> List[RiskFactor]:
        cache_key = f"risk:ip:{ip_addr}"
        cached = _from_cache(await self.cache.get_json(cache_key))
        if cached is not None:
            return cached

        factors: List[RiskFactor] = []
        hour_ago = now - timedelta(hours=1)
        failures = await self.signals.count_failed_attempts(hour_ago, ip_addr=ip_addr)
        if failures > 10:
            factors.append(RiskFactor("ip", 40, "High failure rate from IP"))
        elif failures > 5:
            factors.append(RiskFactor("ip", 20, "Moderate failure rate from IP"))

        requests = await self.signals.count_risk_events(ip_addr, now - timedelta(minutes=10))
        if requests > self.settings.risk_rapid_request_limit:
            factors.append(RiskFactor("ip", 25, "Rapid requests from IP"))

        principals = await self.signals.count_distinct_principals(ip_addr, hour_ago)
        if principals > 3:
            factors.append(RiskFactor("ip", 30, "Multiple accounts from same IP"))

        await self.cache.set_json(
            cache_key,
            {"factors": [f.as_dict() for f in factors]},
            self.settings.risk_cache_ttl_seconds,
        )
        return factors

    async def _principal_factors(self, signal: RiskSignal) -> List[RiskFactor]:
        principal_id = signal.principal_id
        cache_key = f"risk:user:{principal_id}:{signal.ip_addr or '-'}"
        cached = _from_cache(await self.cache.get_json(cache_key))
        if cached is not None:
            return cached

        now = signal.occurred_at
        factors: List[RiskFactor] = []
        failures = await self.signals.count_failed_attempts(
            now - timedelta(hours=1), principal_id=principal_id
        )
        if failures > 5:
            factors.append(RiskFactor("principal", 35, "Multiple failed attempts"))

        if signal.ip_addr:
            known = await self.signals.known_ips(principal_id, now - timedelta(days=30))
            if signal.ip_addr not in known:
                factors.append(RiskFactor("principal", 20, "Login from new IP address"))

        principal = await self.store.get_principal(principal_id)
        if principal is not None:
            if principal.status in (PrincipalStatus.SUSPENDED, PrincipalStatus.CLOSED):
                factors.append(RiskFactor("principal", 60, "Account suspended"))
            if principal.failed_attempts > 3:
                factors.append(RiskFactor("principal", 15, "Recent failed login attempts"))
            if principal.is_locked(now):
                factors.append(RiskFactor("principal", 50, "Account currently locked"))

        await self.cache.set_json(
            cache_key,
            {"factors": [f.as_dict() for f in factors]},
            self.settings.risk_cache_ttl_seconds,
        )
        return factors

    async def should_block(
        self, principal_id: Optional[str] = None, ip_addr: Optional[str] = None
    ) -> BlockDecision:
        now = self.clock.now()
        hour_ago = now - timedelta(hours=1)

        if ip_addr:
            failures = await self.signals.count_failed_attempts(hour_ago, ip_addr=ip_addr)
            if failures >= self.settings.block_ip_failure_threshold:
                return BlockDecision(
                    True,
                    "ip_failure_threshold",
                    now + timedelta(minutes=self.settings.block_ip_minutes),
                )

        if principal_id:
            principal = await self.store.get_principal(principal_id)
            if principal is not None:
                if principal.status in (PrincipalStatus.SUSPENDED, PrincipalStatus.CLOSED):
                    return BlockDecision(True, "account_suspended", None)
                if principal.is_locked(now):
                    return BlockDecision(True, "account_locked", principal.locked_until)
            mfa_failures = await self.signals.count_failed_mfa_attempts(principal_id, hour_ago)
            if mfa_failures >= self.settings.block_principal_mfa_failure_threshold:
                return BlockDecision(True, "mfa_failure_threshold", now + timedelta(hours=1))

        return BlockDecision(False)


__all__ = [
    "ACTION_BY_LEVEL",
    "BASE_WEIGHTS",
    "BlockDecision",
    "RiskAssessment",
    "RiskEngine",
    "RiskFactor",
    "RiskSignal",
    "classify",
    "device_factors",
    "time_factors",
]
