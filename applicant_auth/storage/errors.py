from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint on accounts is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AccountMissing(Exception):
    """Raised when saving an account that no longer exists in the store."""

    def __init__(self, account_id: str):
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


__all__ = ["ConstraintViolation", "AccountMissing"]
