from __future__ import annotations

import re
import secrets
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from applicant_auth.logging import get_logger
from applicant_auth.storage.models import UNUSABLE_PASSWORD_ALGO, Account

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_pwd_hasher = PasswordHasher(type=Type.ID)


def password_policy_violation(password: str) -> Optional[str]:
    """Return a human-readable reason the password is too weak, or None."""
    if not isinstance(password, str):
        return "password is required"
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"password must be at most {MAX_PASSWORD_LENGTH} characters"
    if not re.search(r"[A-Z]", password):
        return "password must contain an uppercase letter"
    if not re.search(r"[a-z]", password):
        return "password must contain a lowercase letter"
    if not re.search(r"\d", password):
        return "password must contain a digit"
    if not re.search(r"[^A-Za-z0-9]", password):
        return "password must contain a special character"
    return None


def hash_password(password: str) -> Tuple[str, str]:
    return _pwd_hasher.hash(password), PASSWORD_ALGO


def unusable_password() -> Tuple[str, str]:
    """Placeholder credential for external-identity accounts; never verifies."""
    return "!" + secrets.token_urlsafe(32), UNUSABLE_PASSWORD_ALGO


def verify_password(account: Account, password: str) -> bool:
    if not account.has_usable_password:
        return False
    if account.password_algo != PASSWORD_ALGO:
        logger.warning(
            "password_algo_mismatch", account_id=account.id, algo=account.password_algo
        )
        return False
    try:
        return _pwd_hasher.verify(account.password_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False
