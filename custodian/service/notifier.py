from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Set

import httpx

from custodian.logging import get_logger

logger = get_logger(__name__)

DELIVERED = "delivered"
FAILED = "failed"
LOGGED = "logged"

StatusCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class OTPMessage:
    channel: str
    destination: str
    code: str
    principal_id: str
    expires_at: datetime


class Notifier(Protocol):
    def dispatch(self, message: OTPMessage) -> str: ...

    def on_status(self, callback: StatusCallback) -> None: ...


class _CallbackMixin:
    def __init__(self) -> None:
        self._callbacks: list[StatusCallback] = []

    def on_status(self, callback: StatusCallback) -> None:
        self._callbacks.append(callback)

    def _report(self, reference: str, status: str) -> None:
        for callback in self._callbacks:
            try:
                callback(reference, status)
            except Exception as exc:
                logger.error(
                    "notifier_status_callback_failed",
                    reference=reference,
                    status=status,
                    error=str(exc),
                )


class LoggingNotifier(_CallbackMixin):
    """Development notifier: records the OTP in the log instead of sending it."""

    def dispatch(self, message: OTPMessage) -> str:
        reference = f"ntf_{secrets.token_hex(8)}"
        logger.info(
            "otp_delivery_logged",
            reference=reference,
            channel=message.channel,
            principal_id=message.principal_id,
            otp_code=message.code,
        )
        self._report(reference, LOGGED)
        return reference


class WebhookNotifier(_CallbackMixin):
    """Posts OTP deliveries to an SMS/email gateway without blocking the caller.

    ``dispatch`` schedules the HTTP call on the running loop and returns a
    reference at once; the gateway outcome is reported through the status
    callbacks registered with ``on_status``.
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__()
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, message: OTPMessage) -> str:
        reference = f"ntf_{secrets.token_hex(8)}"
        task = asyncio.get_running_loop().create_task(self._deliver(reference, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return reference

    async def _deliver(self, reference: str, message: OTPMessage) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        body = {
            "reference": reference,
            "channel": message.channel,
            "to": message.destination,
            "code": message.code,
            "expires_at": message.expires_at.isoformat(),
        }
        try:
            if self._client is not None:
                resp = await self._client.post(
                    self.webhook_url, json=body, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.webhook_url, json=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "otp_delivery_failed",
                reference=reference,
                channel=message.channel,
                error_type=type(exc).__name__,
            )
            self._report(reference, FAILED)
            return
        self._report(reference, DELIVERED)

    async def drain(self) -> None:
        """Wait for in-flight deliveries, e.g. on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "DELIVERED",
    "FAILED",
    "LOGGED",
    "LoggingNotifier",
    "Notifier",
    "OTPMessage",
    "WebhookNotifier",
]
