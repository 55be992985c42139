from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


class AuthProvider:
    LOCAL = "local"
    GOOGLE = "google"

    ALL = (LOCAL, GOOGLE)


# Stored in place of a hash for external-identity accounts; never verifies.
UNUSABLE_PASSWORD_ALGO = "external"

# Single-use token columns that redeem_token may guard on.
REDEEMABLE_TOKEN_FIELDS = ("activation_token", "reset_token")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class Account:
    id: str
    email: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    auth_provider: str = AuthProvider.LOCAL
    enabled: bool = False
    activated: bool = False
    activation_token: Optional[str] = None
    activation_token_expires_at: Optional[datetime] = None
    reset_token: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    role: str = "applicant"
    profile: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        *,
        auth_provider: str = AuthProvider.LOCAL,
        profile: Optional[Dict] = None,
        **fields,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            auth_provider=auth_provider,
            profile=dict(profile or {}),
            **fields,
        )

    @property
    def is_external(self) -> bool:
        return self.auth_provider != AuthProvider.LOCAL

    @property
    def has_usable_password(self) -> bool:
        return bool(self.password_hash) and self.password_algo != UNUSABLE_PASSWORD_ALGO
