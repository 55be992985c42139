from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from typing import Optional

import httpx

from applicant_auth.config import Settings
from applicant_auth.logging import email_hash, get_logger
from applicant_auth.service.auth import (
    AccountStore,
    LoginResult,
    require_strong_password,
    same_secret,
)
from applicant_auth.service.errors import (
    AccountDisabled,
    AuthenticationError,
    DependencyUnavailable,
    EmailAlreadyInUse,
    EmailMismatch,
    InvalidCredentials,
    NotSsoUser,
    TokenInvalid,
    ValidationError,
)
from applicant_auth.service.passwords import hash_password, unusable_password
from applicant_auth.service.tokens import TokenService
from applicant_auth.storage.cache import CredentialCache
from applicant_auth.storage.errors import ConstraintViolation
from applicant_auth.storage.models import Account, AuthProvider, normalize_email

logger = get_logger(__name__)


@dataclass
class ExternalIdentity:
    subject: str
    email: str
    email_verified: bool
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() == "true"


class GoogleIdentityVerifier:
    """Validates Google ID tokens against the tokeninfo endpoint."""

    def __init__(
        self,
        client_id: Optional[str],
        *,
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self._transport = transport
        self._timeout = timeout

    async def verify(self, id_token: str) -> ExternalIdentity:
        if not self.client_id:
            logger.error("google_sso_not_configured")
            raise DependencyUnavailable("Google sign-in is not configured")
        if not id_token:
            raise InvalidCredentials("Google token is missing")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport, follow_redirects=False
            ) as client:
                response = await client.get(
                    self.tokeninfo_url, params={"id_token": id_token}
                )
        except httpx.HTTPError as exc:
            logger.error("google_tokeninfo_unreachable", error=str(exc))
            raise DependencyUnavailable("Google sign-in is temporarily unavailable")

        if response.status_code >= 500:
            logger.error("google_tokeninfo_error", status_code=response.status_code)
            raise DependencyUnavailable("Google sign-in is temporarily unavailable")
        if response.status_code != 200:
            logger.info("google_token_rejected", status_code=response.status_code)
            raise InvalidCredentials("invalid Google token")
        try:
            info = response.json()
        except ValueError as exc:
            logger.error("google_tokeninfo_parse_error", error=str(exc))
            raise DependencyUnavailable("Google sign-in returned an unreadable response")
        if not isinstance(info, dict):
            raise InvalidCredentials("invalid Google token")

        if info.get("aud") != self.client_id:
            logger.warning("google_token_audience_mismatch")
            raise InvalidCredentials("Google token was issued for another application")
        email = info.get("email")
        subject = info.get("sub")
        if not email or not subject:
            raise InvalidCredentials("Google token does not carry an email identity")
        return ExternalIdentity(
            subject=str(subject),
            email=normalize_email(email),
            email_verified=_truthy(info.get("email_verified")),
            given_name=info.get("given_name"),
            family_name=info.get("family_name"),
            picture=info.get("picture"),
        )


class SsoService:
    """Google sign-in, SSO-to-local conversion and the two-proof SSO email change."""

    OLD_PROOF_PREFIX = "auth:sso_proof:old:"
    NEW_PROOF_PREFIX = "auth:sso_proof:new:"

    def __init__(
        self,
        store: AccountStore,
        cache: CredentialCache,
        settings: Settings,
        *,
        tokens: TokenService,
        verifier: GoogleIdentityVerifier,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.verifier = verifier

    async def _verified_identity(self, id_token: str) -> ExternalIdentity:
        identity = await self.verifier.verify(id_token)
        if not identity.email_verified:
            raise InvalidCredentials(
                "Google account email is not verified", reason="email_not_verified"
            )
        return identity

    async def sso_login(self, id_token: str) -> LoginResult:
        identity = await self._verified_identity(id_token)
        account = self.store.get_account_by_email(identity.email)
        if account is None:
            pwd_hash, algo = unusable_password()
            profile = {
                key: value
                for key, value in (
                    ("first_name", identity.given_name),
                    ("last_name", identity.family_name),
                    ("avatar_url", identity.picture),
                    ("google_subject", identity.subject),
                )
                if value
            }
            account = Account.new(
                identity.email,
                auth_provider=AuthProvider.GOOGLE,
                profile=profile,
                password_hash=pwd_hash,
                password_algo=algo,
                enabled=True,
                activated=True,
            )
            try:
                account = self.store.create_account(account)
            except ConstraintViolation:
                raise EmailAlreadyInUse(reason="local_account_exists")
            logger.info("sso_account_created", account_id=account.id)
        elif not account.is_external:
            logger.info("sso_login_local_conflict", email_hash=email_hash(identity.email))
            raise EmailAlreadyInUse(
                "this email is registered with a password; sign in with email and password",
                reason="local_account_exists",
            )
        if not account.enabled:
            raise AccountDisabled()
        logger.info("sso_login_succeeded", account_id=account.id)
        return LoginResult(
            account=account,
            access=self.tokens.issue_access_token(account.id, account.role, email=account.email),
            refresh=self.tokens.issue_refresh_token(account.id, account.role, email=account.email),
        )

    async def set_password_for_sso_user(
        self, account_id: str, new_password: str, confirm_password: str
    ) -> Account:
        """Give an SSO account a password, converting it to a local account for good."""
        if new_password != confirm_password:
            raise ValidationError(
                "passwords do not match",
                detail={"field": "confirm_password"},
                reason="password_mismatch",
            )
        account = self.store.get_account(account_id)
        if account is None:
            raise AuthenticationError("account not found", reason="account_missing")
        if not account.is_external:
            raise NotSsoUser()
        require_strong_password(new_password)
        account.password_hash, account.password_algo = hash_password(new_password)
        account.auth_provider = AuthProvider.LOCAL
        account = self.store.save_account(account)
        logger.info("sso_account_converted_to_local", account_id=account.id)
        return account

    # -- two-phase email change --------------------------------------------

    def _require_sso(self, account: Account) -> None:
        if not account.is_external:
            raise NotSsoUser()

    async def _store_proof(self, key: str, email: str) -> str:
        proof = secrets.token_urlsafe(32)
        payload = json.dumps({"token": proof, "email": email})
        try:
            await self.cache.set(key, payload, self.settings.sso_proof_ttl_minutes * 60)
        except Exception as exc:
            logger.error("sso_proof_store_failed", error=str(exc))
            raise DependencyUnavailable()
        return proof

    async def _load_proof(self, key: str) -> Optional[dict]:
        try:
            raw = await self.cache.get(key)
        except Exception as exc:
            logger.error("sso_proof_load_failed", error=str(exc))
            raise DependencyUnavailable()
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    async def verify_sso_ownership(self, account: Account, id_token: str) -> str:
        """Prove control of the current address; returns the old-email proof."""
        self._require_sso(account)
        identity = await self._verified_identity(id_token)
        if identity.email != account.email:
            raise EmailMismatch("Google account does not match the current email")
        return await self._store_proof(f"{self.OLD_PROOF_PREFIX}{account.id}", account.email)

    async def verify_new_email_ownership(
        self, account: Account, new_email: str, id_token: str
    ) -> str:
        """Prove control of the requested address; returns the new-email proof."""
        self._require_sso(account)
        new_email = normalize_email(new_email)
        identity = await self._verified_identity(id_token)
        if identity.email != new_email:
            raise EmailMismatch("Google account does not match the requested email")
        if new_email == account.email:
            raise ValidationError(
                "new email must differ from the current email",
                detail={"field": "new_email"},
                reason="email_unchanged",
            )
        if self.store.get_account_by_email(new_email):
            raise EmailAlreadyInUse()
        return await self._store_proof(f"{self.NEW_PROOF_PREFIX}{account.id}", new_email)

    async def change_email_sso(
        self, account: Account, old_proof: str, new_proof: str
    ) -> Account:
        """Redeem both proofs and commit the email change. Nothing changes on failure."""
        self._require_sso(account)
        old_key = f"{self.OLD_PROOF_PREFIX}{account.id}"
        new_key = f"{self.NEW_PROOF_PREFIX}{account.id}"
        old_entry = await self._load_proof(old_key)
        new_entry = await self._load_proof(new_key)
        if old_entry is None or new_entry is None:
            raise TokenInvalid(
                "email verification has expired; verify both addresses again",
                reason="proof_missing",
            )
        if not (
            same_secret(str(old_entry.get("token", "")), old_proof)
            and same_secret(str(new_entry.get("token", "")), new_proof)
        ):
            raise TokenInvalid("email verification proof is invalid", reason="proof_invalid")
        if old_entry.get("email") != account.email:
            raise EmailMismatch("account email changed since verification")

        new_email = str(new_entry.get("email"))
        if self.store.get_account_by_email(new_email):
            raise EmailAlreadyInUse()
        account.email = new_email
        try:
            account = self.store.save_account(account)
        except ConstraintViolation:
            raise EmailAlreadyInUse()
        for key in (old_key, new_key):
            try:
                await self.cache.delete(key)
            except Exception as exc:
                logger.warning("sso_proof_delete_failed", error=str(exc))
        logger.info("sso_email_changed", account_id=account.id)
        return account
