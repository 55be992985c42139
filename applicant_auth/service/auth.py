from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from applicant_auth.config import Settings
from applicant_auth.logging import email_hash, get_logger
from applicant_auth.service.brute_force import BruteForceGuard
from applicant_auth.service.email import Mailer
from applicant_auth.service.errors import (
    AccountDisabled,
    AccountNotActivated,
    AuthenticationError,
    DependencyUnavailable,
    EmailAlreadyInUse,
    ForbiddenForSsoUser,
    InvalidCredentials,
    RateLimited,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from applicant_auth.service.passwords import (
    hash_password,
    password_policy_violation,
    verify_password,
)
from applicant_auth.service.revocation import RevocationRegistry, token_fingerprint
from applicant_auth.service.tokens import (
    ACCESS,
    REFRESH,
    IssuedToken,
    TokenClaims,
    TokenService,
)
from applicant_auth.storage.cache import CredentialCache
from applicant_auth.storage.errors import ConstraintViolation
from applicant_auth.storage.models import Account, normalize_email, utcnow

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_activation_token(self, token: str) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def redeem_token(
        self, account: Account, field: str, token: str
    ) -> Optional[Account]: ...

    def discard_account(self, account_id: str) -> None: ...


@dataclass
class LoginResult:
    account: Account
    access: IssuedToken
    refresh: IssuedToken


@dataclass
class ActivationResult:
    account: Account
    already_activated: bool


ALREADY_ACTIVATED = "already_activated"
ACTIVATION_SENT = "sent"


def new_opaque_token() -> str:
    return secrets.token_urlsafe(32)


def same_secret(expected: str, presented: Optional[str]) -> bool:
    """Constant-time comparison that tolerates non-ASCII input."""
    return hmac.compare_digest(
        expected.encode("utf-8"), (presented or "").encode("utf-8", "replace")
    )


def require_strong_password(password: str) -> None:
    problem = password_policy_violation(password)
    if problem:
        raise ValidationError(problem, detail={"field": "password"}, reason="weak_password")


async def send_mail(send: Callable[..., bool], *args: Any, event: str) -> bool:
    """Run a blocking mailer call off the event loop; False on any failure."""
    try:
        sent = await asyncio.to_thread(send, *args)
    except Exception as exc:
        logger.error(f"{event}_failed", error_type=type(exc).__name__, error=str(exc))
        return False
    if not sent:
        logger.error(f"{event}_failed", error_type="send_returned_false")
    return bool(sent)


class AuthService:
    """Registration, activation, password login, sessions and password reset.

    Each flow is a single state machine over the account store. Cross-request
    state (attempt counters, revocations, cooldowns) lives in the credential
    cache so that any number of workers can serve the same user.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: CredentialCache,
        settings: Settings,
        *,
        tokens: TokenService,
        guard: BruteForceGuard,
        revocation: RevocationRegistry,
        mailer: Mailer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.guard = guard
        self.revocation = revocation
        self.mailer = mailer
        self._now = clock

    # -- registration & activation -----------------------------------------

    async def register(
        self, email: str, password: str, profile: Optional[dict] = None
    ) -> Account:
        email = normalize_email(email)
        require_strong_password(password)
        if self.store.get_account_by_email(email):
            raise EmailAlreadyInUse()
        pwd_hash, algo = hash_password(password)
        account = Account.new(
            email,
            profile=profile,
            password_hash=pwd_hash,
            password_algo=algo,
            enabled=False,
            activated=False,
            activation_token=new_opaque_token(),
            activation_token_expires_at=self._now()
            + timedelta(hours=self.settings.activation_token_ttl_hours),
        )
        try:
            account = self.store.create_account(account)
        except ConstraintViolation:
            raise EmailAlreadyInUse()

        sent = await send_mail(
            self.mailer.send_activation,
            account.email,
            account.activation_token,
            event="activation_email",
        )
        if not sent:
            # Registration is all-or-nothing: no orphaned account without a delivered token
            self.store.discard_account(account.id)
            logger.error("registration_rolled_back", account_id=account.id)
            raise DependencyUnavailable(
                "could not send the activation email; please try registering again"
            )
        logger.info("account_registered", account_id=account.id, email_hash=email_hash(email))
        return account

    def _used_activation_key(self, token: str) -> str:
        return f"auth:activation_used:{token_fingerprint(token)}"

    async def _account_for_used_activation(self, token: str) -> Optional[Account]:
        try:
            account_id = await self.cache.get(self._used_activation_key(token))
        except Exception as exc:
            logger.warning("activation_used_lookup_failed", error=str(exc))
            return None
        return self.store.get_account(account_id) if account_id else None

    async def activate(self, token: str) -> ActivationResult:
        account = self.store.get_account_by_activation_token(token)
        if account is None:
            # A consumed token keeps answering "already activated" until it would have expired
            used_by = await self._account_for_used_activation(token)
            if used_by is not None and used_by.activated:
                return ActivationResult(account=used_by, already_activated=True)
            raise TokenInvalid("activation token is invalid")
        if account.activated:
            return ActivationResult(account=account, already_activated=True)
        expires_at = account.activation_token_expires_at
        if expires_at is None or expires_at <= self._now():
            account.activation_token = None
            account.activation_token_expires_at = None
            self.store.save_account(account)
            logger.info("activation_token_expired", account_id=account.id)
            raise TokenExpired(
                "activation token has expired; request a new activation email"
            )
        account.activated = True
        account.enabled = True
        account.activation_token = None
        account.activation_token_expires_at = None
        redeemed = self.store.redeem_token(account, "activation_token", token)
        if redeemed is None:
            # Another request consumed the token between our read and write
            current = self.store.get_account(account.id)
            if current is not None and current.activated:
                return ActivationResult(account=current, already_activated=True)
            raise TokenInvalid("activation token is invalid")
        account = redeemed
        remaining = int((expires_at - self._now()).total_seconds())
        try:
            await self.cache.set(self._used_activation_key(token), account.id, max(1, remaining))
        except Exception as exc:
            logger.warning("activation_used_record_failed", error=str(exc))
        logger.info("account_activated", account_id=account.id)
        return ActivationResult(account=account, already_activated=False)

    async def resend_activation(self, email: str) -> str:
        """Regenerate and resend the activation link.

        Returns ``"already_activated"`` when there is nothing to do and
        ``"sent"`` otherwise, including for unknown addresses.
        """
        email = normalize_email(email)
        cooldown_key = f"auth:resend_activation:{email}"
        try:
            acquired = await self.cache.set_if_absent(
                cooldown_key, "1", self.settings.resend_activation_cooldown_seconds
            )
            retry_after = None if acquired else await self.cache.ttl(cooldown_key)
        except Exception as exc:
            logger.error("resend_cooldown_unavailable", error=str(exc))
            raise DependencyUnavailable()
        if not acquired:
            raise RateLimited(
                retry_after or self.settings.resend_activation_cooldown_seconds,
                message="please wait before requesting another activation email",
            )

        account = self.store.get_account_by_email(email)
        if account is None:
            logger.info("resend_activation_unknown_email", email_hash=email_hash(email))
            return ACTIVATION_SENT
        if account.activated:
            return ALREADY_ACTIVATED
        account.activation_token = new_opaque_token()
        account.activation_token_expires_at = self._now() + timedelta(
            hours=self.settings.activation_token_ttl_hours
        )
        account = self.store.save_account(account)
        sent = await send_mail(
            self.mailer.send_activation,
            account.email,
            account.activation_token,
            event="activation_email",
        )
        if not sent:
            raise DependencyUnavailable("could not send the activation email")
        return ACTIVATION_SENT

    # -- login & sessions ---------------------------------------------------

    async def _handle_unactivated_login(self, account: Account) -> None:
        """Reject an unactivated login, resending the link when the old one is gone."""
        expires_at = account.activation_token_expires_at
        if account.activation_token and expires_at and expires_at > self._now():
            raise AccountNotActivated()

        token = new_opaque_token()
        sent = await send_mail(
            self.mailer.send_activation, account.email, token, event="activation_email"
        )
        if not sent:
            raise AccountNotActivated(
                "account not activated and a new activation email could not be sent",
                reason="activation_resend_failed",
            )
        account.activation_token = token
        account.activation_token_expires_at = self._now() + timedelta(
            minutes=self.settings.activation_resend_ttl_minutes
        )
        self.store.save_account(account)
        logger.info("activation_resent_on_login", account_id=account.id)
        raise AccountNotActivated(
            "account not activated; a new activation email has been sent",
            reason="activation_resent",
        )

    def _issue_pair(self, account: Account) -> LoginResult:
        return LoginResult(
            account=account,
            access=self.tokens.issue_access_token(
                account.id, account.role, email=account.email
            ),
            refresh=self.tokens.issue_refresh_token(
                account.id, account.role, email=account.email
            ),
        )

    async def login(self, email: str, password: str) -> LoginResult:
        email = normalize_email(email or "")
        # Counted before lookup so unknown and unactivated identifiers are throttled too
        await self.guard.record_attempt(email)

        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            logger.info("login_failed", email_hash=email_hash(email), reason="unknown_email")
            raise InvalidCredentials()
        if account.is_external and not account.has_usable_password:
            raise ForbiddenForSsoUser()
        if not account.activated:
            await self._handle_unactivated_login(account)
        if not verify_password(account, password or ""):
            logger.info("login_failed", account_id=account.id, reason="bad_password")
            raise InvalidCredentials()
        if not account.enabled:
            raise AccountDisabled()

        await self.guard.reset(email)
        logger.info("login_succeeded", account_id=account.id)
        return self._issue_pair(account)

    def _active_account(self, claims: TokenClaims) -> Account:
        account = self.store.get_account(claims.subject)
        if account is None or not account.enabled:
            raise TokenInvalid("account is no longer available")
        return account

    async def refresh(self, refresh_token: Optional[str]) -> tuple[IssuedToken, str, Account]:
        """New access token for a valid refresh token; the refresh token is not rotated."""
        if not refresh_token:
            raise TokenInvalid("refresh token is missing")
        holder: dict[str, Account] = {}

        def authorize(claims: TokenClaims) -> TokenClaims:
            account = self._active_account(claims)
            holder["account"] = account
            return TokenClaims(
                subject=account.id,
                role=account.role,
                token_type=claims.token_type,
                issued_at=claims.issued_at,
                expires_at=claims.expires_at,
                jti=claims.jti,
                email=account.email,
            )

        access, same_refresh = await self.tokens.refresh(refresh_token, authorize=authorize)
        return access, same_refresh, holder["account"]

    async def authenticate(self, access_token: Optional[str]) -> tuple[Account, TokenClaims]:
        """Resolve a bearer/cookie access token to its account."""
        if not access_token:
            raise AuthenticationError("authentication required", reason="missing_token")
        claims = await self.tokens.verify(access_token, expected_type=ACCESS)
        return self._active_account(claims), claims

    async def check_session(self, access_token: Optional[str]) -> tuple[Account, IssuedToken]:
        """Re-validate the access token and hand back a freshly issued one."""
        account, _ = await self.authenticate(access_token)
        return account, self.tokens.issue_access_token(
            account.id, account.role, email=account.email
        )

    async def _revoke_quietly(self, token: Optional[str], token_type: str) -> bool:
        if not token:
            return False
        try:
            claims = self.tokens.verify_signature_and_expiry(token, expected_type=token_type)
        except AuthenticationError:
            return False
        return await self.revocation.revoke(token, self.tokens.remaining_lifetime(claims))

    async def logout(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> None:
        """Best-effort revocation of whatever tokens were presented. Never raises."""
        revoked_access = await self._revoke_quietly(access_token, ACCESS)
        revoked_refresh = await self._revoke_quietly(refresh_token, REFRESH)
        logger.info(
            "logout", revoked_access=revoked_access, revoked_refresh=revoked_refresh
        )

    # -- password reset -----------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        """Issue and mail a reset token if the account exists. Always silent."""
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if account is None:
            logger.info("password_reset_unknown_email", email_hash=email_hash(email))
            return
        if account.is_external:
            logger.info("password_reset_skipped_sso", account_id=account.id)
            return
        account.reset_token = new_opaque_token()
        account.reset_token_expires_at = self._now() + timedelta(
            minutes=self.settings.reset_token_ttl_minutes
        )
        account = self.store.save_account(account)
        await send_mail(
            self.mailer.send_password_reset,
            account.email,
            account.reset_token,
            event="password_reset_email",
        )

    async def reset_password(self, token: str, new_password: str) -> Account:
        account = self.store.get_account_by_reset_token(token)
        if account is None:
            raise TokenInvalid("reset token is invalid")
        expires_at = account.reset_token_expires_at
        if expires_at is None or expires_at <= self._now():
            account.reset_token = None
            account.reset_token_expires_at = None
            self.store.save_account(account)
            raise TokenExpired("reset token has expired; request a new one")
        require_strong_password(new_password)
        account.password_hash, account.password_algo = hash_password(new_password)
        account.reset_token = None
        account.reset_token_expires_at = None
        redeemed = self.store.redeem_token(account, "reset_token", token)
        if redeemed is None:
            raise TokenInvalid("reset token is invalid")
        account = redeemed
        logger.info("password_reset_completed", account_id=account.id)
        return account

    # -- authenticated account changes --------------------------------------

    def _require_local_with_password(self, account: Account, current_password: str) -> None:
        if account.is_external:
            raise ForbiddenForSsoUser(
                "Google sign-in accounts cannot use this operation"
            )
        if not verify_password(account, current_password or ""):
            raise InvalidCredentials("current password is incorrect")

    async def change_password(
        self,
        account: Account,
        current_password: str,
        new_password: str,
        *,
        access_token: Optional[str] = None,
    ) -> IssuedToken:
        self._require_local_with_password(account, current_password)
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
                reason="password_unchanged",
            )
        require_strong_password(new_password)
        account.password_hash, account.password_algo = hash_password(new_password)
        account = self.store.save_account(account)
        await self._revoke_quietly(access_token, ACCESS)
        logger.info("password_changed", account_id=account.id)
        return self.tokens.issue_access_token(account.id, account.role, email=account.email)

    async def change_email(
        self, account: Account, current_password: str, new_email: str
    ) -> Account:
        self._require_local_with_password(account, current_password)
        new_email = normalize_email(new_email)
        old_email = account.email
        if new_email == old_email:
            raise ValidationError(
                "new email must differ from the current email",
                detail={"field": "new_email"},
                reason="email_unchanged",
            )
        if self.store.get_account_by_email(new_email):
            raise EmailAlreadyInUse()
        account.email = new_email
        try:
            account = self.store.save_account(account)
        except ConstraintViolation:
            raise EmailAlreadyInUse()
        logger.info("email_changed", account_id=account.id)
        await send_mail(
            self.mailer.send_email_change_notice,
            old_email,
            new_email,
            event="email_change_notice",
        )
        return account
