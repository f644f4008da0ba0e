from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a unique index or foreign key rejects a write.

    ``constraint`` names the violated rule (``user_email``, ``org_slug``,
    ``role_name``, ``org_member``, ...) so services can translate it without
    parsing driver messages.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.constraint = constraint
        self.detail = detail or {}
        if constraint:
            self.detail.setdefault("constraint", constraint)


__all__ = ["ConstraintViolation"]
