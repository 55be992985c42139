from __future__ import annotations

import json
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from applicant_auth.logging import get_logger
from applicant_auth.storage.errors import AccountMissing, ConstraintViolation
from applicant_auth.storage.models import (
    REDEEMABLE_TOKEN_FIELDS,
    Account,
    AuthProvider,
    normalize_email,
    utcnow,
)

_ACCOUNT_COLUMNS = (
    "id",
    "email",
    "password_hash",
    "password_algo",
    "auth_provider",
    "enabled",
    "activated",
    "activation_token",
    "activation_token_expires_at",
    "reset_token",
    "reset_token_expires_at",
    "role",
    "profile",
    "created_at",
    "updated_at",
)


class PostgresStore:
    """Postgres-backed account store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``applicant_account`` table and token indexes if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS applicant_account (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT,
                    password_algo TEXT,
                    auth_provider TEXT NOT NULL DEFAULT 'local',
                    enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    activated BOOLEAN NOT NULL DEFAULT FALSE,
                    activation_token TEXT,
                    activation_token_expires_at TIMESTAMPTZ,
                    reset_token TEXT,
                    reset_token_expires_at TIMESTAMPTZ,
                    role TEXT NOT NULL DEFAULT 'applicant',
                    profile JSONB,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS applicant_account_activation_token_idx "
                "ON applicant_account (activation_token)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS applicant_account_reset_token_idx "
                "ON applicant_account (reset_token)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        profile = row.get("profile")
        if isinstance(profile, str):
            try:
                profile = json.loads(profile)
            except json.JSONDecodeError:
                profile = {}
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            auth_provider=row.get("auth_provider") or AuthProvider.LOCAL,
            enabled=bool(row.get("enabled")),
            activated=bool(row.get("activated")),
            activation_token=row.get("activation_token"),
            activation_token_expires_at=row.get("activation_token_expires_at"),
            reset_token=row.get("reset_token"),
            reset_token_expires_at=row.get("reset_token_expires_at"),
            role=row.get("role") or "applicant",
            profile=profile or {},
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _account_params(account: Account) -> tuple:
        return (
            account.id,
            account.email,
            account.password_hash,
            account.password_algo,
            account.auth_provider,
            account.enabled,
            account.activated,
            account.activation_token,
            account.activation_token_expires_at,
            account.reset_token,
            account.reset_token_expires_at,
            account.role,
            json.dumps(account.profile) if account.profile else None,
            account.created_at,
            account.updated_at,
        )

    def _fetch_one(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM applicant_account WHERE {where} = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_account(row)

    def create_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        placeholders = ", ".join(["%s"] * len(_ACCOUNT_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO applicant_account ({', '.join(_ACCOUNT_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    self._account_params(account),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_one("id", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one("email", normalize_email(email))

    def get_account_by_activation_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._fetch_one("activation_token", token)

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._fetch_one("reset_token", token)

    def save_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        account.updated_at = utcnow()
        assignments = ", ".join(f"{col} = %s" for col in _ACCOUNT_COLUMNS[1:])
        params = self._account_params(account)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    f"UPDATE applicant_account SET {assignments} WHERE id = %s",
                    (*params[1:], account.id),
                )
                if cur.rowcount == 0:
                    raise AccountMissing(account.id)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def redeem_token(
        self, account: Account, field: str, token: str
    ) -> Optional[Account]:
        """Save ``account`` only if its stored ``field`` still holds ``token``.

        The guard lives in the UPDATE itself so two workers redeeming the same
        token cannot both succeed.
        """
        if field not in REDEEMABLE_TOKEN_FIELDS:
            raise ValueError(f"unsupported token field: {field}")
        if not token:
            return None
        account.email = normalize_email(account.email)
        account.updated_at = utcnow()
        assignments = ", ".join(f"{col} = %s" for col in _ACCOUNT_COLUMNS[1:])
        params = self._account_params(account)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    f"UPDATE applicant_account SET {assignments} "
                    f"WHERE id = %s AND {field} = %s",
                    (*params[1:], account.id, token),
                )
                if cur.rowcount == 0:
                    return None
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def discard_account(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM applicant_account WHERE id = %s", (account_id,))
        self.logger.info("account_discarded", account_id=account_id)
