from __future__ import annotations

import pytest

from tenantsaml.cache import DEFAULT_KEY_EXPIRATION_PERIOD_MS, InMemoryCacheProvider


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_save_get_remove_cycle() -> None:
    cache = InMemoryCacheProvider()
    assert cache.key_expiration_period_ms == DEFAULT_KEY_EXPIRATION_PERIOD_MS == 28_800_000
    assert await cache.save("_req1", "2024-01-01T00:00:00Z") == "2024-01-01T00:00:00Z"
    assert await cache.get("_req1") == "2024-01-01T00:00:00Z"
    assert await cache.remove("_req1") == "_req1"
    assert await cache.get("_req1") is None
    assert await cache.remove("_req1") is None


@pytest.mark.asyncio
async def test_save_refuses_live_duplicate() -> None:
    cache = InMemoryCacheProvider()
    assert await cache.save("_req1", "first") == "first"
    assert await cache.save("_req1", "second") is None
    assert await cache.get("_req1") == "first"


@pytest.mark.asyncio
async def test_entries_expire_lazily() -> None:
    clock = FakeClock()
    cache = InMemoryCacheProvider(key_expiration_period_ms=1_000, clock=clock)
    await cache.save("_req1", "value")
    clock.now += 0.5
    assert await cache.get("_req1") == "value"
    clock.now += 0.5
    assert await cache.get("_req1") is None
    assert len(cache) == 0
    # An expired key can be reused.
    assert await cache.save("_req1", "again") == "again"


@pytest.mark.asyncio
async def test_prune_drops_only_expired_entries() -> None:
    clock = FakeClock()
    cache = InMemoryCacheProvider(key_expiration_period_ms=10_000, clock=clock)
    await cache.save("old", 1)
    clock.now += 6
    await cache.save("new", 2)
    clock.now += 5
    assert cache.prune() == 1
    assert await cache.get("old") is None
    assert await cache.get("new") == 2


def test_rejects_non_positive_expiration() -> None:
    with pytest.raises(ValueError):
        InMemoryCacheProvider(key_expiration_period_ms=0)
