from __future__ import annotations

from applicant_auth.logging import email_hash, get_logger
from applicant_auth.service.errors import DependencyUnavailable, RateLimited
from applicant_auth.storage.cache import CredentialCache
from applicant_auth.storage.models import normalize_email

logger = get_logger(__name__)


class BruteForceGuard:
    """Fixed-window login attempt counter keyed by normalized identifier.

    The first attempt in a window creates the counter with the window TTL;
    later attempts increment it without extending the window. Attempt number
    ``max_attempts + 1`` and beyond are refused until the window expires.
    """

    KEY_PREFIX = "auth:login_attempts:"

    def __init__(
        self,
        cache: CredentialCache,
        *,
        max_attempts: int = 5,
        window_seconds: int = 60,
        fail_open: bool = False,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.fail_open = fail_open

    def _key(self, identifier: str) -> str:
        return f"{self.KEY_PREFIX}{normalize_email(identifier)}"

    async def record_attempt(self, identifier: str) -> int:
        """Count one attempt; raise RateLimited once the window budget is spent."""
        try:
            count, remaining = await self.cache.incr_with_ttl(
                self._key(identifier), self.window_seconds
            )
        except Exception as exc:
            if self.fail_open:
                logger.warning(
                    "login_guard_unavailable_fail_open",
                    identifier_hash=email_hash(identifier),
                    error=str(exc),
                )
                return 0
            logger.error(
                "login_guard_unavailable",
                identifier_hash=email_hash(identifier),
                error=str(exc),
            )
            raise DependencyUnavailable("login is temporarily unavailable")
        if count > self.max_attempts:
            logger.warning(
                "login_rate_limited",
                identifier_hash=email_hash(identifier),
                attempts=count,
                retry_after=remaining,
            )
            raise RateLimited(remaining, message="too many login attempts; try again later")
        return count

    async def reset(self, identifier: str) -> None:
        try:
            await self.cache.delete(self._key(identifier))
        except Exception as exc:
            logger.warning(
                "login_guard_reset_failed",
                identifier_hash=email_hash(identifier),
                error=str(exc),
            )
