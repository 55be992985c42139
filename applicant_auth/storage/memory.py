from __future__ import annotations

import copy
import threading
from typing import Dict, Optional

from applicant_auth.logging import get_logger
from applicant_auth.storage.errors import AccountMissing, ConstraintViolation
from applicant_auth.storage.models import (
    REDEEMABLE_TOKEN_FIELDS,
    Account,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-memory account store for tests and single-process development.

    Accounts are copied on the way in and out so callers never mutate stored
    state without an explicit ``save_account``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            existing.email == email and existing.id != exclude_id
            for existing in self.accounts.values()
        )

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            account.email = normalize_email(account.email)
            if self._email_taken(account.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.id] = copy.deepcopy(account)
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return copy.deepcopy(account)
        return None

    def get_account_by_activation_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if account.activation_token == token:
                    return copy.deepcopy(account)
        return None

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if account.reset_token == token:
                    return copy.deepcopy(account)
        return None

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise AccountMissing(account.id)
            account.email = normalize_email(account.email)
            if self._email_taken(account.email, exclude_id=account.id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account.updated_at = utcnow()
            self.accounts[account.id] = copy.deepcopy(account)
            return copy.deepcopy(account)

    def redeem_token(
        self, account: Account, field: str, token: str
    ) -> Optional[Account]:
        """Save ``account`` only if its stored ``field`` still holds ``token``."""
        if field not in REDEEMABLE_TOKEN_FIELDS:
            raise ValueError(f"unsupported token field: {field}")
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None or not token or getattr(current, field) != token:
                return None
            return self.save_account(account)

    def discard_account(self, account_id: str) -> None:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is not None:
                self.logger.info("account_discarded", account_id=account_id)
