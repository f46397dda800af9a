"""asyncpg pool creation."""

from typing import Optional

import asyncpg
import structlog

from genqueue.config import Settings

logger = structlog.get_logger(__name__)


async def create_db_pool(settings: Settings) -> Optional[asyncpg.Pool]:
    """Create the connection pool, or return None when no database is configured."""
    if not settings.database_url:
        logger.warning(
            "Database connection not configured. Set DATABASE_URL to use PostgreSQL"
        )
        return None

    logger.info(
        "Attempting database connection",
        url_prefix=settings.database_url[:30] + "...",
    )
    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout_s,
        statement_cache_size=0,  # pgbouncer transaction mode
    )
    logger.info(
        "Database pool initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool
