from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple, runtime_checkable


@runtime_checkable
class CredentialCache(Protocol):
    """Shared key/value cache with per-key TTLs.

    Every piece of cross-request auth state (attempt counters, revocation
    entries, cooldowns, proofs, the M2M credential) lives behind this
    interface so that services stay stateless and tests can swap in a
    deterministic fake. Values are strings; callers own serialization.
    """

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        """Atomically increment ``key``; TTL is applied only when the key is created.

        Returns ``(count, remaining_ttl_seconds)``.
        """

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None when the key is absent."""

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class MemoryCache:
    """In-process CredentialCache.

    Used as the deterministic fake in tests (pass ``clock``) and as the
    single-node fallback when Redis is unavailable in development. Expired
    keys are dropped lazily on access; nothing sweeps in the background.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    def _remaining(self, expires_at: float) -> int:
        # Round up so a live key never reports zero seconds left
        remaining = expires_at - self._clock()
        whole = int(remaining)
        return max(1, whole if whole == remaining else whole + 1)

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> Tuple[int, int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                expires_at = self._clock() + ttl_seconds
                count = 1
            else:
                count = int(entry[0]) + 1
                expires_at = entry[1]
            self._entries[key] = (str(count), expires_at)
            return count, self._remaining(expires_at)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return self._remaining(entry[1])

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
