"""Unit tests for the resource pool manager."""

import asyncio

import pytest

from genqueue.services.resource_pool import (
    RESOURCE_KEYS_ACQUIRED_TOTAL,
    RESOURCE_POOL_EXHAUSTED_TOTAL,
    ResourcePoolManager,
)


@pytest.fixture
def pool(key_store, clock):
    return ResourcePoolManager(key_store, clock=clock)


class TestResourcePoolManager:
    @pytest.mark.asyncio
    async def test_spreads_load_across_keys(self, pool):
        await pool.register("key-a", "image-generation", "sk-a", daily_limit=10)
        await pool.register("key-b", "image-generation", "sk-b", daily_limit=10)

        picks = [(await pool.acquire("image-generation")).id for _ in range(4)]

        assert sorted(picks) == ["key-a", "key-a", "key-b", "key-b"]
        assert await pool.remaining_quota("image-generation") == 16

    @pytest.mark.asyncio
    async def test_exhaustion_returns_none(self, pool):
        await pool.register("key-a", "video-generation", "sk-a", daily_limit=1)
        assert await pool.acquire("video-generation") is not None
        assert await pool.acquire("video-generation") is None

    @pytest.mark.asyncio
    async def test_quota_rolls_over_at_utc_midnight(self, pool, clock):
        await pool.register("key-a", "audio-generation", "sk-a", daily_limit=1)
        assert await pool.acquire("audio-generation") is not None
        assert await pool.acquire("audio-generation") is None

        clock.advance(hours=12)  # 12:00 -> 00:00 next day
        assert await pool.acquire("audio-generation") is not None

    @pytest.mark.asyncio
    async def test_deactivated_key_is_skipped(self, pool):
        await pool.register("key-a", "image-generation", "sk-a", daily_limit=10)
        assert await pool.deactivate("key-a") is True
        assert await pool.acquire("image-generation") is None
        assert await pool.reactivate("key-a") is True
        assert (await pool.acquire("image-generation")).id == "key-a"
        assert await pool.deactivate("missing") is False

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_exceed_limit(self, pool):
        await pool.register("key-a", "image-generation", "sk-a", daily_limit=3)
        await pool.register("key-b", "image-generation", "sk-b", daily_limit=3)

        keys = await asyncio.gather(*(pool.acquire("image-generation") for _ in range(10)))

        granted = [k for k in keys if k is not None]
        assert len(granted) == 6
        assert await pool.remaining_quota("image-generation") == 0

    @pytest.mark.asyncio
    async def test_negative_limit_rejected(self, pool):
        with pytest.raises(ValueError):
            await pool.register("key-a", "s", "c", daily_limit=-1)

    @pytest.mark.asyncio
    async def test_acquires_and_exhaustion_counted(self, pool):
        acquired = RESOURCE_KEYS_ACQUIRED_TOTAL.labels(service="video-generation")
        exhausted = RESOURCE_POOL_EXHAUSTED_TOTAL.labels(service="video-generation")
        acquired_before, exhausted_before = acquired._value.get(), exhausted._value.get()
        await pool.register("key-a", "video-generation", "sk-a", daily_limit=1)

        await pool.acquire("video-generation")
        await pool.acquire("video-generation")
        await pool.acquire("video-generation")

        assert acquired._value.get() - acquired_before == 1
        assert exhausted._value.get() - exhausted_before == 2
