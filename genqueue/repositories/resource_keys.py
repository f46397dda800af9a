"""Repository for pooled API keys (PostgreSQL)."""

from datetime import datetime, timezone
from typing import Optional

import structlog

from genqueue.core.resilience import with_db_retry
from genqueue.jobs.models import ResourceKey

logger = structlog.get_logger(__name__)

# Usage counted within the UTC day passed as $2
_USAGE_TODAY = """
    (CASE WHEN {t}last_used_at IS NOT NULL
               AND ({t}last_used_at AT TIME ZONE 'UTC')::date = $2
          THEN {t}usage_count_today ELSE 0 END)
"""

_ACQUIRE_TEMPLATE = f"""
    WITH candidate AS (
        SELECT id FROM resource_keys
        WHERE service = $1
          AND is_active
          AND {_USAGE_TODAY.format(t="")} < daily_limit
        ORDER BY {_USAGE_TODAY.format(t="")}, id
        LIMIT 1
        FOR UPDATE {{skip_locked}}
    )
    UPDATE resource_keys k SET
        usage_count_today = {_USAGE_TODAY.format(t="k.")} + 1,
        last_used_at = $3
    FROM candidate
    WHERE k.id = candidate.id
      AND k.is_active
      AND {_USAGE_TODAY.format(t="k.")} < k.daily_limit
    RETURNING k.*
"""

# Skips keys another acquirer holds so concurrent acquirers spread over the pool
_ACQUIRE_QUERY = _ACQUIRE_TEMPLATE.format(skip_locked="SKIP LOCKED")
# Waits for the lock; used once every candidate was skipped
_ACQUIRE_WAIT_QUERY = _ACQUIRE_TEMPLATE.format(skip_locked="")

_HAS_QUOTA_QUERY = f"""
    SELECT EXISTS (
        SELECT 1 FROM resource_keys
        WHERE service = $1
          AND is_active
          AND {_USAGE_TODAY.format(t="")} < daily_limit
    )
"""


class ResourceKeyRepository:
    """Repository for resource key selection and administration."""

    # Locked keys are skipped in every round but the last, which waits on the
    # lock instead so a single busy key is not mistaken for exhaustion.
    ACQUIRE_ROUNDS = 3

    def __init__(self, pool):
        self._pool = pool

    async def add(self, key: ResourceKey) -> ResourceKey:
        query = """
            INSERT INTO resource_keys (
                id, service, credential, daily_limit, usage_count_today,
                last_used_at, is_active
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                service = EXCLUDED.service,
                credential = EXCLUDED.credential,
                daily_limit = EXCLUDED.daily_limit,
                is_active = EXCLUDED.is_active
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                key.id,
                key.service,
                key.credential,
                key.daily_limit,
                key.usage_count_today,
                key.last_used_at,
                key.is_active,
            )
        logger.info("resource_key_registered", key_id=key.id, service=key.service)
        return self._row_to_key(row)

    async def acquire(self, service: str, now: datetime) -> Optional[ResourceKey]:
        today = now.astimezone(timezone.utc).date()

        async def _op(conn):
            for round_no in range(self.ACQUIRE_ROUNDS):
                last = round_no == self.ACQUIRE_ROUNDS - 1
                query = _ACQUIRE_WAIT_QUERY if last else _ACQUIRE_QUERY
                async with conn.transaction():
                    row = await conn.fetchrow(query, service, today, now)
                if row is not None:
                    return row
                if not await conn.fetchval(_HAS_QUOTA_QUERY, service, today):
                    return None
            return None

        row = await with_db_retry(self._pool, _op)
        return self._row_to_key(row) if row else None

    async def set_active(self, key_id: str, is_active: bool) -> bool:
        query = """
            UPDATE resource_keys SET is_active = $2
            WHERE id = $1
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, key_id, is_active)
        return row is not None

    async def list_for_service(self, service: str) -> list[ResourceKey]:
        query = "SELECT * FROM resource_keys WHERE service = $1 ORDER BY id"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, service)
        return [self._row_to_key(row) for row in rows]

    def _row_to_key(self, row) -> ResourceKey:
        return ResourceKey(
            id=row["id"],
            service=row["service"],
            credential=row["credential"],
            daily_limit=row["daily_limit"],
            usage_count_today=row["usage_count_today"],
            last_used_at=row["last_used_at"],
            is_active=row["is_active"],
        )
