"""Expiring request-id stores used to reject replayed SAML responses."""

from __future__ import annotations

from time import monotonic
from typing import Any, Callable, Protocol

__all__ = ["DEFAULT_KEY_EXPIRATION_PERIOD_MS", "CacheProvider", "InMemoryCacheProvider"]

DEFAULT_KEY_EXPIRATION_PERIOD_MS = 28_800_000  # 8 hours


class CacheProvider(Protocol):
    """Storage contract for outstanding request identifiers."""

    async def save(self, key: str, value: Any) -> Any | None:
        """Store ``value`` under ``key`` and return it, or ``None`` if ``key`` is taken."""

    async def get(self, key: str) -> Any | None:
        """Return the live value for ``key``."""

    async def remove(self, key: str) -> str | None:
        """Delete ``key`` and return it, or ``None`` if it was absent."""


class InMemoryCacheProvider:
    """Process-local :class:`CacheProvider` with lazy expiry.

    Entries older than ``key_expiration_period_ms`` are treated as absent and are
    dropped the next time they are touched or when :meth:`prune` runs. All
    mutations happen without awaiting, so the store is consistent for any number
    of coroutines sharing one event loop.
    """

    def __init__(
        self,
        *,
        key_expiration_period_ms: int = DEFAULT_KEY_EXPIRATION_PERIOD_MS,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if key_expiration_period_ms <= 0:
            raise ValueError("key_expiration_period_ms must be positive")
        self.key_expiration_period_ms = key_expiration_period_ms
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def save(self, key: str, value: Any) -> Any | None:
        if self._live(key):
            return None
        self._entries[key] = (value, self._clock())
        return value

    async def get(self, key: str) -> Any | None:
        if not self._live(key):
            return None
        return self._entries[key][0]

    async def remove(self, key: str) -> str | None:
        if self._entries.pop(key, None) is None:
            return None
        return key

    def prune(self) -> int:
        """Drop expired entries and return how many were removed."""

        cutoff = self._clock() - self.key_expiration_period_ms / 1000
        expired = [key for key, (_, created) in self._entries.items() if created <= cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _live(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._clock() - entry[1] >= self.key_expiration_period_ms / 1000:
            del self._entries[key]
            return False
        return True
