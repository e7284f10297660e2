from __future__ import annotations

from typing import Any, Dict, Optional

from findclass.service.errors import StorageUnavailable

# Constraint names carried in ConstraintViolation.detail["constraint"]
USER_EMAIL_UNIQUE = "user_email_unique"
PENDING_APPLICATION_UNIQUE = "role_application_pending_unique"


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def constraint(self) -> Optional[str]:
        return self.detail.get("constraint")


__all__ = [
    "ConstraintViolation",
    "StorageUnavailable",
    "USER_EMAIL_UNIQUE",
    "PENDING_APPLICATION_UNIQUE",
]
