from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a unique or foreign-key constraint on users/sessions is violated.

    ``detail["field"]`` names the offending column when known, e.g. ``email``
    for a duplicate address or ``user_id`` for a session whose owner is gone.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
