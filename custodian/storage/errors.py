from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """A backing store did not answer within its time budget.

    Callers decide between degraded operation and a hard error; this is
    never converted into an authentication decision.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"store unavailable during {operation}")
        self.operation = operation
        self.cause = cause


class Corrupt(Exception):
    """A persisted record failed authentication or could not be decoded."""

    def __init__(self, record_id: str):
        super().__init__(f"record {record_id} failed integrity check")
        self.record_id = record_id


__all__ = ["ConstraintViolation", "StoreUnavailable", "Corrupt"]
