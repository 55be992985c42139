from __future__ import annotations

import asyncio
import weakref
from typing import Any, Optional

import httpx

from applicant_auth.logging import get_logger
from applicant_auth.service.errors import DependencyUnavailable
from applicant_auth.storage.cache import CredentialCache

logger = get_logger(__name__)


class M2MCredentialClient:
    """Client-credentials token for calls this service makes to other systems.

    The token is shared through the credential cache with a TTL of the
    provider lifetime minus a safety buffer. Cache failures never block a
    call: the client just fetches a fresh token. With ``single_flight`` on,
    concurrent cache misses in one process share a single upstream fetch.
    """

    CACHE_KEY = "m2m:system_token"

    def __init__(
        self,
        cache: CredentialCache,
        *,
        token_url: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str] = None,
        scope: Optional[str] = None,
        expiry_buffer_seconds: int = 60,
        single_flight: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.cache = cache
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.expiry_buffer_seconds = expiry_buffer_seconds
        self.single_flight = single_flight
        self._transport = transport
        self._timeout = timeout
        # asyncio.Lock binds to the loop that first uses it; keep one per loop
        self._locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    @property
    def is_configured(self) -> bool:
        return bool(self.token_url and self.client_id)

    def _refetch_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        lock = self._locks.get(loop)
        if lock is None:
            lock = self._locks[loop] = asyncio.Lock()
        return lock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _cached(self) -> Optional[str]:
        try:
            return await self.cache.get(self.CACHE_KEY)
        except Exception as exc:
            logger.warning("m2m_cache_read_failed", error=str(exc))
            return None

    async def _fetch_and_cache(self) -> str:
        if not self.is_configured:
            raise DependencyUnavailable("machine-to-machine credentials are not configured")
        form = {"grant_type": "client_credentials", "client_id": self.client_id}
        if self.client_secret:
            form["client_secret"] = self.client_secret
        if self.scope:
            form["scope"] = self.scope
        try:
            async with self._client() as client:
                response = await client.post(
                    self.token_url, data=form, headers={"Accept": "application/json"}
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "m2m_token_http_error",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise DependencyUnavailable("could not obtain a system access token")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("m2m_token_fetch_failed", error=str(exc))
            raise DependencyUnavailable("could not obtain a system access token")

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            logger.error("m2m_token_missing_in_response")
            raise DependencyUnavailable("token endpoint returned no access token")
        try:
            expires_in = int(body.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600

        cache_ttl = expires_in - self.expiry_buffer_seconds
        if cache_ttl > 0:
            try:
                await self.cache.set(self.CACHE_KEY, access_token, cache_ttl)
            except Exception as exc:
                logger.warning("m2m_cache_write_failed", error=str(exc))
        logger.info("m2m_token_fetched", cache_ttl=max(cache_ttl, 0))
        return access_token

    async def get_access_token(self) -> str:
        cached = await self._cached()
        if cached:
            return cached
        if not self.single_flight:
            return await self._fetch_and_cache()
        async with self._refetch_lock():
            # Another coroutine may have refilled the cache while we waited
            cached = await self._cached()
            if cached:
                return cached
            return await self._fetch_and_cache()

    async def force_refresh(self) -> str:
        """Drop the cached token (e.g. after the target rejected it) and fetch a new one."""
        try:
            await self.cache.delete(self.CACHE_KEY)
        except Exception as exc:
            logger.warning("m2m_cache_delete_failed", error=str(exc))
        if not self.single_flight:
            return await self._fetch_and_cache()
        async with self._refetch_lock():
            return await self._fetch_and_cache()

    async def authorization_header(self) -> str:
        return f"Bearer {await self.get_access_token()}"

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Authenticated call to another system; one retry with a fresh token on 401."""
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = await self.authorization_header()
        async with self._client() as client:
            response = await client.request(method, url, headers=headers, **kwargs)
            if response.status_code == 401:
                logger.info("m2m_token_rejected_retrying", url=url)
                headers["Authorization"] = f"Bearer {await self.force_refresh()}"
                response = await client.request(method, url, headers=headers, **kwargs)
        return response
