"""Unit tests for the resource key repository."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from genqueue.repositories.resource_keys import ResourceKeyRepository

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_pool():
    pool = MagicMock()
    conn = AsyncMock()

    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=None)
    pool.acquire.return_value = cm

    tx = MagicMock()
    tx.__aenter__ = AsyncMock(return_value=None)
    tx.__aexit__ = AsyncMock(return_value=None)
    conn.transaction = MagicMock(return_value=tx)

    return pool, conn


@pytest.fixture
def key_row():
    return {
        "id": "key-a",
        "service": "image-generation",
        "credential": "sk-test",
        "daily_limit": 100,
        "usage_count_today": 4,
        "last_used_at": NOW,
        "is_active": True,
    }


class TestAcquire:
    @pytest.mark.asyncio
    async def test_select_and_increment_in_one_statement(self, mock_pool, key_row):
        pool, conn = mock_pool
        conn.fetchrow.return_value = key_row
        repo = ResourceKeyRepository(pool)

        key = await repo.acquire("image-generation", NOW)

        assert key.id == "key-a"
        query, service, today, now = conn.fetchrow.call_args.args
        assert "FOR UPDATE SKIP LOCKED" in query
        assert "usage_count_today" in query
        assert service == "image-generation"
        assert today == date(2024, 3, 1)
        assert now == NOW

    @pytest.mark.asyncio
    async def test_exhausted_pool_returns_none(self, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None
        conn.fetchval.return_value = False
        repo = ResourceKeyRepository(pool)

        assert await repo.acquire("image-generation", NOW) is None
        assert conn.fetchrow.call_count == 1

    @pytest.mark.asyncio
    async def test_reselects_after_losing_race(self, mock_pool, key_row):
        pool, conn = mock_pool
        conn.fetchrow.side_effect = [None, key_row]
        conn.fetchval.return_value = True
        repo = ResourceKeyRepository(pool)

        key = await repo.acquire("image-generation", NOW)

        assert key.id == "key-a"
        assert conn.fetchrow.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_rounds(self, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None
        conn.fetchval.return_value = True
        repo = ResourceKeyRepository(pool)

        assert await repo.acquire("image-generation", NOW) is None
        assert conn.fetchrow.call_count == ResourceKeyRepository.ACQUIRE_ROUNDS
        queries = [c.args[0] for c in conn.fetchrow.call_args_list]
        assert all("SKIP LOCKED" in q for q in queries[:-1])
        # The last round waits on the lock instead of skipping
        assert "SKIP LOCKED" not in queries[-1]
        assert "FOR UPDATE" in queries[-1]


class TestAdministration:
    @pytest.mark.asyncio
    async def test_set_active_unknown_key(self, mock_pool):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None
        assert await ResourceKeyRepository(pool).set_active("nope", False) is False

    @pytest.mark.asyncio
    async def test_list_for_service(self, mock_pool, key_row):
        pool, conn = mock_pool
        conn.fetch.return_value = [key_row]
        keys = await ResourceKeyRepository(pool).list_for_service("image-generation")
        assert [k.id for k in keys] == ["key-a"]
        assert keys[0].usage_on(NOW) == 4
