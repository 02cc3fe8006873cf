from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MissingTableError(Exception):
    """Raised when a query hits a table the connected schema does not have yet."""

    def __init__(self, table: str):
        super().__init__(f"table {table} does not exist")
        self.table = table


__all__ = ["ConstraintViolation", "MissingTableError"]
