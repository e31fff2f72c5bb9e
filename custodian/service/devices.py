from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from custodian.clock import Clock
from custodian.config import Settings
from custodian.logging import get_logger
from custodian.service.context import RequestContext
from custodian.service.errors import MFARequired, NotFoundError
from custodian.service.mfa import is_recent
from custodian.service.risk import RiskEngine, RiskSignal
from custodian.service.sessions import SessionStore
from custodian.storage.common import CredentialStore, RiskSignalStore, generate_id
from custodian.storage.models import (
    RiskEventType,
    Session,
    StepUpVia,
    TrustedDevice,
    TrustedDeviceUsage,
    TrustLevel,
)

logger = get_logger(__name__)

NO_TRUSTED_DEVICE = "no_trusted_device"
TOO_MANY_IPS = "too_many_ips"
RECENT_SECURITY_INCIDENTS = "recent_security_incidents"
DEVICE_DORMANT = "device_dormant"


@dataclass(frozen=True)
class DeviceTrust:
    trusted: bool
    reason: Optional[str] = None
    device_id: Optional[str] = None
    session: Optional[Session] = None


class TrustedDeviceEvaluator:
    """Decides whether a remembered device may skip step-up authentication.

    A device record is necessary but not sufficient: every evaluation also
    re-runs the IP diversity, incident and dormancy checks, and each denial
    carries the reason that produced it. Checks that implicate the device
    itself (IP spread, dormancy) revoke the record so it cannot be retried.
    """

    def __init__(
        self,
        store: CredentialStore,
        signals: RiskSignalStore,
        sessions: SessionStore,
        risk: RiskEngine,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.store = store
        self.signals = signals
        self.sessions = sessions
        self.risk = risk
        self.settings = settings
        self.clock = clock

    async def evaluate(
        self,
        principal_id: str,
        fingerprint: Optional[str],
        ip_addr: Optional[str],
        session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DeviceTrust:
        now = self.clock.now()
        device = await self.store.find_trusted_device(principal_id, fingerprint) if fingerprint else None
        if device is None or not device.is_active(now):
            return self._deny(principal_id, NO_TRUSTED_DEVICE, device)

        ip_window = now - timedelta(days=self.settings.trusted_device_ip_window_days)
        ips = set(await self.signals.device_ips(device.id, ip_window))
        if ip_addr:
            ips.add(ip_addr)
        if len(ips) >= self.settings.trusted_device_max_ips:
            await self._revoke_failed(device, TOO_MANY_IPS)
            return self._deny(principal_id, TOO_MANY_IPS, device, distinct_ips=len(ips))

        incident_since = now - timedelta(hours=self.settings.trusted_device_incident_window_hours)
        incidents = [
            event
            for event in await self.signals.list_risk_events(principal_id, incident_since)
            if event.blocked or event.score >= self.settings.risk_threshold_high
        ]
        if incidents:
            return self._deny(principal_id, RECENT_SECURITY_INCIDENTS, device, incidents=len(incidents))

        last_seen = await self.signals.last_device_usage(device.id)
        last_seen = max(filter(None, (last_seen, device.last_used_at, device.created_at)))
        if now - last_seen > timedelta(days=self.settings.trusted_device_dormancy_days):
            await self._revoke_failed(device, DEVICE_DORMANT)
            return self._deny(principal_id, DEVICE_DORMANT, device)

        await self.signals.append_device_usage(
            TrustedDeviceUsage(
                device_id=device.id,
                principal_id=principal_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
                session_id=session_id,
                created_at=now,
            )
        )
        await self.store.record_trusted_device_use(device.id, now)
        session = None
        if session_id:
            session = await self.sessions.mark_step_up_complete(session_id, StepUpVia.TRUSTED_DEVICE)
        await self.risk.record(
            RiskSignal(
                type=RiskEventType.TRUSTED_DEVICE,
                occurred_at=now,
                ip_addr=ip_addr,
                user_agent=user_agent,
                principal_id=principal_id,
                details={"device_id": device.id, "trusted": True},
            )
        )
        logger.info("trusted_device_accepted", principal_id=principal_id, device_id=device.id)
        return DeviceTrust(True, None, device.id, session)

    def _deny(
        self, principal_id: str, reason: str, device: Optional[TrustedDevice], **extra
    ) -> DeviceTrust:
        logger.info(
            "trusted_device_denied",
            principal_id=principal_id,
            device_id=device.id if device else None,
            reason=reason,
            **extra,
        )
        return DeviceTrust(False, reason, device.id if device else None)

    async def _revoke_failed(self, device: TrustedDevice, reason: str) -> None:
        await self.store.revoke_trusted_device(
            device.id, self.clock.now(), reason=reason, revoked_by="system"
        )
        logger.warning(
            "trusted_device_revoked",
            principal_id=device.principal_id,
            device_id=device.id,
            reason=reason,
        )

    async def register(
        self,
        principal_id: str,
        fingerprint: str,
        name: Optional[str],
        session: Session,
        context: Optional[RequestContext] = None,
    ) -> TrustedDevice:
        """Remember ``fingerprint`` after an explicit step-up in ``session``.

        Re-registering a device that is already trusted returns the existing
        record unchanged.
        """
        now = self.clock.now()
        window = timedelta(minutes=self.settings.trusted_device_registration_window_minutes)
        if (
            session.principal_id != principal_id
            or session.mfa_via != StepUpVia.EXPLICIT
            or not is_recent(session.mfa_verified_at, now, window)
        ):
            raise MFARequired(reason="device_registration_requires_step_up")
        if not fingerprint:
            raise MFARequired(reason="device_fingerprint_missing")

        existing = await self.store.find_trusted_device(principal_id, fingerprint)
        if existing is not None and existing.is_active(now):
            return existing

        context = context or RequestContext()
        device = await self.store.add_trusted_device(
            TrustedDevice(
                id=generate_id("dev"),
                principal_id=principal_id,
                fingerprint=fingerprint,
                name=name or "Trusted device",
                expires_at=now + timedelta(days=self.settings.trusted_device_ttl_days),
                created_at=now,
                trust_level=TrustLevel.MEDIUM,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
            )
        )
        await self.signals.append_device_usage(
            TrustedDeviceUsage(
                device_id=device.id,
                principal_id=principal_id,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
                session_id=session.id,
                created_at=now,
            )
        )
        logger.info("trusted_device_registered", principal_id=principal_id, device_id=device.id)
        return device

    async def list_devices(self, principal_id: str, *, include_inactive: bool = False) -> List[TrustedDevice]:
        devices = await self.store.list_trusted_devices(principal_id)
        if include_inactive:
            return devices
        now = self.clock.now()
        return [d for d in devices if d.is_active(now)]

    async def revoke(
        self,
        principal_id: str,
        device_id: str,
        reason: str = "user_request",
        revoked_by: Optional[str] = None,
    ) -> TrustedDevice:
        device = await self.store.get_trusted_device(device_id)
        if device is None or device.principal_id != principal_id:
            raise NotFoundError("Device not found", reason="trusted_device_not_found")
        revoked = await self.store.revoke_trusted_device(
            device_id, self.clock.now(), reason=reason, revoked_by=revoked_by or principal_id
        )
        logger.info("trusted_device_revoked", principal_id=principal_id, device_id=device_id, reason=reason)
        return revoked or device


__all__ = [
    "DEVICE_DORMANT",
    "DeviceTrust",
    "NO_TRUSTED_DEVICE",
    "RECENT_SECURITY_INCIDENTS",
    "TOO_MANY_IPS",
    "TrustedDeviceEvaluator",
]
