from __future__ import annotations

import hashlib
from typing import Optional

from applicant_auth.logging import get_logger
from applicant_auth.storage.cache import CredentialCache

logger = get_logger(__name__)


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationRegistry:
    """Cache-backed blacklist of tokens invalidated before their natural expiry.

    Entries live only as long as the token would have, so the registry never
    outgrows the set of still-valid tokens. Both reads and writes fail open:
    a cache outage must not lock every user out. Inter-service verification
    does not consult this registry at all.
    """

    KEY_PREFIX = "auth:revoked:"

    def __init__(self, cache: CredentialCache) -> None:
        self.cache = cache

    def _key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token_fingerprint(token)}"

    async def revoke(self, token: str, remaining_seconds: int) -> bool:
        """Record ``token`` as revoked. Returns False when skipped or on cache failure."""
        if remaining_seconds <= 0:
            return False
        try:
            await self.cache.set(self._key(token), "1", remaining_seconds)
        except Exception as exc:
            logger.warning(
                "token_revocation_write_failed",
                fingerprint_prefix=token_fingerprint(token)[:12],
                error=str(exc),
            )
            return False
        return True

    async def is_revoked(self, token: str) -> bool:
        try:
            value: Optional[str] = await self.cache.get(self._key(token))
        except Exception as exc:
            logger.warning(
                "token_revocation_check_failed",
                fingerprint_prefix=token_fingerprint(token)[:12],
                error=str(exc),
            )
            return False
        return value is not None
