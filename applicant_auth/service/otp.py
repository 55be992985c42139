from __future__ import annotations

import secrets

from applicant_auth.config import Settings
from applicant_auth.logging import email_hash, get_logger
from applicant_auth.service.auth import same_secret, send_mail
from applicant_auth.service.email import Mailer
from applicant_auth.service.errors import DependencyUnavailable, RateLimited, TokenInvalid
from applicant_auth.storage.cache import CredentialCache
from applicant_auth.storage.models import normalize_email

logger = get_logger(__name__)

OTP_DIGITS = 6


def generate_otp() -> str:
    return f"{secrets.randbelow(10 ** OTP_DIGITS):0{OTP_DIGITS}d}"


class OtpService:
    """Six-digit email codes with a per-address send cooldown and guess limit."""

    def __init__(self, cache: CredentialCache, settings: Settings, *, mailer: Mailer) -> None:
        self.cache = cache
        self.settings = settings
        self.mailer = mailer

    @staticmethod
    def _code_key(email: str) -> str:
        return f"auth:otp:{email}"

    @staticmethod
    def _rate_key(email: str) -> str:
        return f"auth:otp_rate:{email}"

    @staticmethod
    def _attempts_key(email: str) -> str:
        return f"auth:otp_attempts:{email}"

    async def send_otp(self, email: str) -> None:
        """Mail a fresh code. The answer is the same whether or not an account exists."""
        email = normalize_email(email)
        rate_key = self._rate_key(email)
        try:
            if not await self.cache.set_if_absent(
                rate_key, "1", self.settings.otp_cooldown_seconds
            ):
                retry_after = await self.cache.ttl(rate_key)
                raise RateLimited(
                    retry_after or self.settings.otp_cooldown_seconds,
                    message="please wait before requesting another code",
                )
            code = generate_otp()
            await self.cache.set(
                self._code_key(email), code, self.settings.otp_ttl_minutes * 60
            )
        except RateLimited:
            raise
        except Exception as exc:
            logger.error("otp_cache_unavailable", error=str(exc))
            raise DependencyUnavailable()

        if not await send_mail(self.mailer.send_otp, email, code, event="otp_email"):
            try:
                await self.cache.delete(self._code_key(email))
                await self.cache.delete(rate_key)
            except Exception as exc:
                logger.warning("otp_cleanup_failed", error=str(exc))
            raise DependencyUnavailable("could not send the verification code")
        logger.info("otp_sent", email_hash=email_hash(email))

    async def verify_otp(self, email: str, code: str) -> bool:
        """Check a code. Too many wrong guesses burn the code and lock the address."""
        email = normalize_email(email)
        key = self._code_key(email)
        attempts_key = self._attempts_key(email)
        try:
            failures = await self.cache.get(attempts_key)
            if failures and int(failures) >= self.settings.otp_max_attempts:
                retry_after = await self.cache.ttl(attempts_key)
                raise RateLimited(
                    retry_after or self.settings.otp_ttl_minutes * 60,
                    message="too many incorrect codes; request a new one later",
                )
            stored = await self.cache.get(key)
        except RateLimited:
            raise
        except Exception as exc:
            logger.error("otp_cache_unavailable", error=str(exc))
            raise DependencyUnavailable()
        if not stored or not same_secret(stored, (code or "").strip()):
            await self._record_failure(email)
            logger.info("otp_rejected", email_hash=email_hash(email))
            raise TokenInvalid("verification code is invalid or expired")
        for done_key in (key, attempts_key):
            try:
                await self.cache.delete(done_key)
            except Exception as exc:
                logger.warning("otp_delete_failed", error=str(exc))
        return True

    async def _record_failure(self, email: str) -> None:
        try:
            count, remaining = await self.cache.incr_with_ttl(
                self._attempts_key(email), self.settings.otp_ttl_minutes * 60
            )
        except Exception as exc:
            logger.error("otp_cache_unavailable", error=str(exc))
            raise DependencyUnavailable()
        if count < self.settings.otp_max_attempts:
            return
        try:
            await self.cache.delete(self._code_key(email))
        except Exception as exc:
            logger.warning("otp_delete_failed", error=str(exc))
        logger.warning("otp_locked_out", email_hash=email_hash(email), attempts=count)
        raise RateLimited(
            remaining, message="too many incorrect codes; request a new one later"
        )
