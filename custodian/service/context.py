from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Caller-supplied facts about the request being authenticated."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    correlation_id: Optional[str] = None
