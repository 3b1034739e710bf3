from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A store rejected a write, e.g. a second account for one email.

    ``detail["field"]`` names the offending field when there is one.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")
