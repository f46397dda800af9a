"""Unit tests for the generation jobs repository."""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from genqueue.jobs.state_machine import JobAction, transition
from genqueue.jobs.types import JobKind, JobStatus
from genqueue.repositories.jobs import (
    DISPATCH_LOCK_KEY,
    JobRepository,
    advisory_lock_key,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_pool():
    """Mock database connection pool with transaction support."""
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
def job_row():
    """Database row for a queued free-tier image job."""
    created = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    return {
        "id": uuid4(),
        "user_id": "user-1",
        "kind": "image",
        "prompt": "a red fox",
        "status": "queued",
        "metadata": json.dumps({"is_public": True, "extra": {"seed": 7}}),
        "tier": json.dumps(
            {
                "name": "free",
                "max_concurrent_requests": 2,
                "priority_level": 1,
                "max_queue_size": 5,
                "max_attempts": 3,
            }
        ),
        "tier_name": "free",
        "priority": 1,
        "attempts": 0,
        "max_attempts": 3,
        "retry_count": 0,
        "progress": 0,
        "tokens_charged": 30,
        "assigned_resource_key": None,
        "result_ref": None,
        "error": None,
        "queue_position": 2,
        "created_at": created,
        "updated_at": created,
        "started_at": None,
        "completed_at": None,
    }


def _processing_row(row, **overrides):
    data = dict(row, status="processing", attempts=1, queue_position=None)
    data.update(overrides)
    return data


# =============================================================================
# Advisory lock keys
# =============================================================================


class TestAdvisoryLockKey:
    def test_stable_and_signed_64_bit(self):
        key = advisory_lock_key("user_queue", "user-1")
        assert key == advisory_lock_key("user_queue", "user-1")
        assert -(2**63) <= key < 2**63

    def test_scope_changes_key(self):
        assert advisory_lock_key("user_queue", "a") != advisory_lock_key("user_queue", "b")
        assert DISPATCH_LOCK_KEY == advisory_lock_key("dispatch_claim")


# =============================================================================
# Row conversion
# =============================================================================


class TestRowToJob:
    def test_decodes_json_columns(self, job_row):
        job = JobRepository(MagicMock())._row_to_job(job_row)

        assert job.kind == JobKind.IMAGE
        assert job.status == JobStatus.QUEUED
        assert job.metadata.is_public is True
        assert job.metadata.extra == {"seed": 7}
        assert job.tier.name == "free"
        assert job.tier.max_queue_size == 5
        assert job.queue_position == 2

    def test_accepts_decoded_jsonb(self, job_row):
        job_row["metadata"] = {"style": "noir"}
        job_row["tier"] = None
        job_row["kind"] = None
        job = JobRepository(MagicMock())._row_to_job(job_row)

        assert job.metadata.style == "noir"
        assert job.tier is None
        assert job.kind is None


# =============================================================================
# Writes
# =============================================================================


class TestInsertWithinLimit:
    @pytest.mark.asyncio
    async def test_inserts_below_limit(self, mock_pool, job_row):
        pool, conn = mock_pool
        conn.fetchval.return_value = 2
        conn.fetchrow.side_effect = [None, job_row]
        repo = JobRepository(pool)
        job = repo._row_to_job(job_row)

        result = await repo.insert_within_limit(job, max_active=5)

        assert result is not None
        assert result.id == job_row["id"]
        lock_call = conn.execute.call_args
        assert "pg_advisory_xact_lock" in lock_call.args[0]
        assert lock_call.args[1] == advisory_lock_key("user_queue", "user-1")
        insert_query = conn.fetchrow.call_args.args[0]
        assert "INSERT INTO generation_jobs" in insert_query

    @pytest.mark.asyncio
    async def test_returns_none_at_limit(self, mock_pool, job_row):
        pool, conn = mock_pool
        conn.fetchval.return_value = 5
        conn.fetchrow.return_value = None
        repo = JobRepository(pool)

        result = await repo.insert_within_limit(repo._row_to_job(job_row), max_active=5)

        assert result is None
        # Only the lookup by id ran
        assert conn.fetchrow.call_count == 1

    @pytest.mark.asyncio
    async def test_replay_after_lost_connection_returns_stored_row(self, mock_pool, job_row):
        pool, conn = mock_pool
        conn.fetchval.return_value = 0
        # Attempt 1: not stored yet, INSERT commits but the connection drops.
        # Attempt 2: the lookup by id finds the committed row.
        conn.fetchrow.side_effect = [None, ConnectionResetError("reset"), job_row]
        repo = JobRepository(pool)

        result = await repo.insert_within_limit(repo._row_to_job(job_row), max_active=5)

        assert result.id == job_row["id"]
        assert conn.fetchrow.call_count == 3
        assert conn.fetchval.call_count == 1
        inserts = [
            c for c in conn.fetchrow.call_args_list if "INSERT INTO" in c.args[0]
        ]
        assert len(inserts) == 1


class TestSaveTransition:
    @pytest.mark.asyncio
    async def test_guarded_on_prior_status_and_attempts(self, mock_pool, job_row):
        pool, conn = mock_pool
        repo = JobRepository(pool)
        before = repo._row_to_job(_processing_row(job_row))
        now = datetime(2024, 3, 1, 12, 5, tzinfo=timezone.utc)
        after = transition(before, JobAction.COMPLETE, now=now, result_ref="https://cdn/x")
        conn.fetchrow.return_value = _processing_row(
            job_row, status="completed", progress=100, result_ref="https://cdn/x"
        )

        saved = await repo.save_transition(before, after)

        assert saved.status == JobStatus.COMPLETED
        query, *params = conn.fetchrow.call_args.args
        assert "WHERE id = $1 AND status = $2 AND attempts = $3" in query
        assert params[0] == before.id
        assert params[1] == "processing"
        assert params[2] == 1
        assert params[3] == "completed"

    @pytest.mark.asyncio
    async def test_conflict_returns_none(self, mock_pool, job_row):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None
        repo = JobRepository(pool)
        before = repo._row_to_job(_processing_row(job_row))
        after = transition(before, JobAction.FAIL, now=before.updated_at, error="boom")

        assert await repo.save_transition(before, after) is None


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_takes_dispatch_lock_and_checks_caps(self, mock_pool, job_row):
        pool, conn = mock_pool
        conn.fetchrow.return_value = _processing_row(job_row)
        repo = JobRepository(pool)
        before = repo._row_to_job(job_row)
        after = transition(before, JobAction.CLAIM, now=before.created_at)

        claimed = await repo.claim(before, after, tier_limit=2, global_limit=10)

        assert claimed.status == JobStatus.PROCESSING
        assert conn.execute.call_args.args[1] == DISPATCH_LOCK_KEY
        query, *params = conn.fetchrow.call_args.args
        assert "status = 'processing'" in query
        assert params[:3] == [before.id, "queued", 0]
        assert params[5:] == [10, "free", 2]

    @pytest.mark.asyncio
    async def test_lost_claim_returns_none(self, mock_pool, job_row):
        pool, conn = mock_pool
        conn.fetchrow.return_value = None
        repo = JobRepository(pool)
        before = repo._row_to_job(job_row)
        after = transition(before, JobAction.CLAIM, now=before.created_at)

        assert await repo.claim(before, after, tier_limit=2, global_limit=10) is None


# =============================================================================
# Reads
# =============================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_dispatch_candidates_order(self, mock_pool, job_row):
        pool, conn = mock_pool
        conn.fetch.return_value = [job_row]
        repo = JobRepository(pool)

        jobs = await repo.list_dispatch_candidates(10)

        assert len(jobs) == 1
        query, statuses, limit = conn.fetch.call_args.args
        assert "ORDER BY priority DESC, created_at ASC" in query
        assert statuses == ["queued", "pending"]
        assert limit == 10

    @pytest.mark.asyncio
    async def test_count_processing_by_tier(self, mock_pool):
        pool, conn = mock_pool
        conn.fetch.return_value = [
            {"tier_name": "free", "cnt": 2},
            {"tier_name": "premium", "cnt": 1},
        ]
        repo = JobRepository(pool)

        assert await repo.count_processing_by_tier() == {"free": 2, "premium": 1}

    @pytest.mark.asyncio
    async def test_stale_processing_uses_updated_at(self, mock_pool):
        pool, conn = mock_pool
        conn.fetch.return_value = []
        repo = JobRepository(pool)
        cutoff = datetime(2024, 3, 1, 11, 45, tzinfo=timezone.utc)

        await repo.list_stale_processing(cutoff, 100)

        query, arg_cutoff, limit = conn.fetch.call_args.args
        assert "updated_at < $1" in query
        assert arg_cutoff == cutoff
        assert limit == 100

    @pytest.mark.asyncio
    async def test_assign_queue_positions(self, mock_pool):
        pool, conn = mock_pool
        ids = [uuid4(), uuid4()]
        conn.fetch.return_value = [{"id": ids[0]}, {"id": ids[1]}]
        repo = JobRepository(pool)

        assigned = await repo.assign_queue_positions(ids)

        assert assigned == 2
        assign_query = conn.fetch.call_args.args[0]
        assert "WITH ORDINALITY" in assign_query
        assert "updated_at" not in assign_query
        clear_query = conn.execute.call_args.args[0]
        assert "queue_position = NULL" in clear_query
