"""Queue position indexer."""

import structlog

from genqueue.repositories.protocols import JobStore

logger = structlog.get_logger(__name__)


class QueuePositionIndexer:
    """Recomputes the 1-based queue position of every waiting job.

    Positions are advisory display data. They follow dispatch order (priority
    desc, created_at asc) and may be briefly stale under concurrent changes.
    """

    def __init__(self, jobs: JobStore):
        self._jobs = jobs

    async def recompute(self) -> int:
        """Returns the number of positions assigned."""
        ordered = await self._jobs.list_waiting_ids()
        assigned = await self._jobs.assign_queue_positions(ordered)
        logger.debug("queue_positions_recomputed", waiting=assigned)
        return assigned
