"""Repository for generation job operations (PostgreSQL)."""

import hashlib
import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog

from genqueue.core.resilience import with_db_retry
from genqueue.jobs.models import Job, JobMetadata, TierConfig
from genqueue.jobs.types import (
    ACTIVE_STATUSES,
    WAITING_STATUSES,
    JobKind,
    JobStatus,
)

logger = structlog.get_logger(__name__)

_WAITING = [s.value for s in WAITING_STATUSES]
_ACTIVE = [s.value for s in ACTIVE_STATUSES]


def advisory_lock_key(name: str, scope: str = "") -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    raw = f"{name}:{scope}"
    h = hashlib.sha256(raw.encode()).digest()[:8]
    return int.from_bytes(h, byteorder="big", signed=True)


DISPATCH_LOCK_KEY = advisory_lock_key("dispatch_claim")

_INSERT_QUERY = """
    INSERT INTO generation_jobs (
        id, user_id, kind, prompt, status, metadata, tier, tier_name, priority,
        attempts, max_attempts, retry_count, progress, tokens_charged,
        assigned_resource_key, result_ref, error, queue_position,
        created_at, updated_at, started_at, completed_at
    )
    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11, $12, $13,
            $14, $15, $16, $17, $18, $19, $20, $21, $22)
    RETURNING *
"""


class JobRepository:
    """Repository for generation job operations."""

    def __init__(self, pool):
        self._pool = pool

    def _insert_params(self, job: Job) -> list[Any]:
        return [
            job.id,
            job.user_id,
            job.kind.value if job.kind else None,
            job.prompt,
            job.status.value,
            json.dumps(job.metadata.to_dict()),
            json.dumps(job.tier.to_dict()) if job.tier else None,
            job.tier_name,
            job.priority,
            job.attempts,
            job.max_attempts,
            job.retry_count,
            job.progress,
            job.tokens_charged,
            job.assigned_resource_key,
            job.result_ref,
            job.error,
            job.queue_position,
            job.created_at,
            job.updated_at,
            job.started_at,
            job.completed_at,
        ]

    async def insert(self, job: Job) -> Job:
        """Persist a new job as-is."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_INSERT_QUERY, *self._insert_params(job))
        logger.info("job_recorded", job_id=str(job.id), status=job.status.value)
        return self._row_to_job(row)

    async def insert_within_limit(self, job: Job, max_active: int) -> Optional[Job]:
        """Insert a job unless its owner already has ``max_active`` active jobs.

        A per-user advisory transaction lock serializes the count and the insert.
        An already stored row with the same id is returned unchanged, so a
        replay after a lost connection never admits the job twice.
        """
        lock_key = advisory_lock_key("user_queue", job.user_id)
        params = self._insert_params(job)

        async def _op(conn):
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", lock_key)
                existing = await conn.fetchrow(
                    "SELECT * FROM generation_jobs WHERE id = $1", job.id
                )
                if existing is not None:
                    logger.info("job_insert_replayed", job_id=str(job.id))
                    return existing
                active = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM generation_jobs
                    WHERE user_id = $1 AND status = ANY($2::text[])
                    """,
                    job.user_id,
                    _ACTIVE,
                )
                if active >= max_active:
                    return None
                return await conn.fetchrow(_INSERT_QUERY, *params)

        row = await with_db_retry(self._pool, _op, replay_safe=True)
        if row is None:
            logger.info(
                "job_insert_limit_reached",
                job_id=str(job.id),
                user_id=job.user_id,
                max_active=max_active,
            )
            return None
        logger.info("job_queued", job_id=str(job.id), user_id=job.user_id)
        return self._row_to_job(row)

    async def get(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""
        query = "SELECT * FROM generation_jobs WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def save_transition(self, before: Job, after: Job) -> Optional[Job]:
        """Compare-and-swap ``after`` over ``before`` keyed on (status, attempts)."""
        query = """
            UPDATE generation_jobs SET
                status = $4,
                attempts = $5,
                max_attempts = $6,
                retry_count = $7,
                progress = $8,
                assigned_resource_key = $9,
                result_ref = $10,
                error = $11,
                queue_position = CASE WHEN $4 = ANY($15::text[])
                                      THEN queue_position ELSE NULL END,
                updated_at = $12,
                started_at = $13,
                completed_at = $14
            WHERE id = $1 AND status = $2 AND attempts = $3
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                before.id,
                before.status.value,
                before.attempts,
                after.status.value,
                after.attempts,
                after.max_attempts,
                after.retry_count,
                after.progress,
                after.assigned_resource_key,
                after.result_ref,
                after.error,
                after.updated_at,
                after.started_at,
                after.completed_at,
                _WAITING,
            )
        if row is None:
            logger.info(
                "job_transition_conflict",
                job_id=str(before.id),
                expected_status=before.status.value,
                expected_attempts=before.attempts,
            )
            return None
        return self._row_to_job(row)

    async def claim(
        self, before: Job, after: Job, tier_limit: int, global_limit: int
    ) -> Optional[Job]:
        """Claim a waiting job for processing.

        All claims take the same advisory transaction lock, so the cap checks and
        the status flip are one serialized step across every dispatcher instance.
        """
        query = """
            UPDATE generation_jobs SET
                status = 'processing',
                attempts = $4,
                progress = 0,
                assigned_resource_key = NULL,
                queue_position = NULL,
                started_at = $5,
                updated_at = $5
            WHERE id = $1
              AND status = $2
              AND attempts = $3
              AND (SELECT COUNT(*) FROM generation_jobs
                   WHERE status = 'processing') < $6
              AND (SELECT COUNT(*) FROM generation_jobs
                   WHERE status = 'processing' AND tier_name = $7) < $8
            RETURNING *
        """

        async def _op(conn):
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", DISPATCH_LOCK_KEY)
                return await conn.fetchrow(
                    query,
                    before.id,
                    before.status.value,
                    before.attempts,
                    after.attempts,
                    after.started_at,
                    global_limit,
                    before.tier_name,
                    tier_limit,
                )

        row = await with_db_retry(self._pool, _op)
        if row is None:
            return None
        logger.info(
            "job_claimed",
            job_id=str(row["id"]),
            tier=row["tier_name"],
            attempt=row["attempts"],
        )
        return self._row_to_job(row)

    async def count_active_for_user(self, user_id: str) -> int:
        query = """
            SELECT COUNT(*) FROM generation_jobs
            WHERE user_id = $1 AND status = ANY($2::text[])
        """
        async with self._pool.acquire() as conn:
            count = await conn.fetchval(query, user_id, _ACTIVE)
        return int(count or 0)

    async def count_processing_by_tier(self) -> dict[str, int]:
        query = """
            SELECT tier_name, COUNT(*) AS cnt FROM generation_jobs
            WHERE status = 'processing'
            GROUP BY tier_name
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return {row["tier_name"]: int(row["cnt"]) for row in rows}

    async def list_dispatch_candidates(self, limit: int) -> list[Job]:
        query = """
            SELECT * FROM generation_jobs
            WHERE status = ANY($1::text[])
            ORDER BY priority DESC, created_at ASC, id
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, _WAITING, limit)
        return [self._row_to_job(row) for row in rows]

    async def list_stale_processing(self, cutoff: datetime, limit: int) -> list[Job]:
        query = """
            SELECT * FROM generation_jobs
            WHERE status = 'processing' AND updated_at < $1
            ORDER BY updated_at
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, cutoff, limit)
        return [self._row_to_job(row) for row in rows]

    async def list_waiting_ids(self) -> list[UUID]:
        query = """
            SELECT id FROM generation_jobs
            WHERE status = ANY($1::text[])
            ORDER BY priority DESC, created_at ASC, id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, _WAITING)
        return [row["id"] for row in rows]

    async def assign_queue_positions(self, ordered_ids: list[UUID]) -> int:
        """Write advisory queue positions. updated_at is left untouched."""
        assign_query = """
            UPDATE generation_jobs j SET queue_position = p.pos
            FROM unnest($1::uuid[]) WITH ORDINALITY AS p(id, pos)
            WHERE j.id = p.id AND j.status = ANY($2::text[])
            RETURNING j.id
        """
        clear_query = """
            UPDATE generation_jobs SET queue_position = NULL
            WHERE status = ANY($1::text[])
              AND queue_position IS NOT NULL
              AND NOT (id = ANY($2::uuid[]))
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(assign_query, ordered_ids, _WAITING)
                await conn.execute(clear_query, _ACTIVE, ordered_ids)
        return len(rows)

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Job]:
        query = """
            SELECT * FROM generation_jobs
            WHERE user_id = $1
            ORDER BY created_at DESC
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, user_id, limit)
        return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        tier = row["tier"]
        if isinstance(tier, str):
            tier = json.loads(tier)
        return Job(
            id=row["id"],
            user_id=row["user_id"],
            kind=JobKind(row["kind"]) if row["kind"] else None,
            prompt=row["prompt"],
            status=JobStatus(row["status"]),
            metadata=JobMetadata.from_dict(metadata),
            tier=TierConfig.from_dict(tier) if tier else None,
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            retry_count=row["retry_count"],
            progress=row["progress"],
            tokens_charged=row["tokens_charged"],
            assigned_resource_key=row["assigned_resource_key"],
            result_ref=row["result_ref"],
            error=row["error"],
            queue_position=row["queue_position"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )
