"""Resource pool manager: rotates external-service API keys under daily quotas."""

from datetime import datetime
from typing import Callable, Optional

import structlog
from prometheus_client import Counter

from genqueue.jobs.models import ResourceKey, utcnow
from genqueue.repositories.protocols import ResourceKeyStore

logger = structlog.get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

RESOURCE_KEYS_ACQUIRED_TOTAL = Counter(
    "genqueue_resource_keys_acquired_total",
    "Key uses recorded against daily quotas",
    ["service"],
)
RESOURCE_POOL_EXHAUSTED_TOTAL = Counter(
    "genqueue_resource_pool_exhausted_total",
    "Acquire attempts that found every key at its daily limit",
    ["service"],
)


class ResourcePoolManager:
    """Selects the least-loaded key with remaining quota for a service.

    Usage counters are daily quotas, not concurrency locks: nothing is released
    when a job finishes, and counters roll over at the UTC day boundary.
    """

    def __init__(self, keys: ResourceKeyStore, clock: Callable[[], datetime] = utcnow):
        self._keys = keys
        self._clock = clock

    async def acquire(self, service: str) -> Optional[ResourceKey]:
        """Select a key and record one use of it.

        Returns None when every active key is at its daily limit; callers treat
        that as temporary resource exhaustion.
        """
        now = self._clock()
        key = await self._keys.acquire(service, now)
        if key is None:
            RESOURCE_POOL_EXHAUSTED_TOTAL.labels(service=service).inc()
            logger.warning("resource_pool_exhausted", service=service)
            return None

        RESOURCE_KEYS_ACQUIRED_TOTAL.labels(service=service).inc()
        logger.debug(
            "resource_key_acquired",
            service=service,
            key_id=key.id,
            usage_today=key.usage_on(now),
            daily_limit=key.daily_limit,
        )
        return key

    async def register(
        self, key_id: str, service: str, credential: str, daily_limit: int
    ) -> ResourceKey:
        if daily_limit < 0:
            raise ValueError("daily_limit must be >= 0")
        return await self._keys.add(
            ResourceKey(
                id=key_id,
                service=service,
                credential=credential,
                daily_limit=daily_limit,
            )
        )

    async def deactivate(self, key_id: str) -> bool:
        changed = await self._keys.set_active(key_id, False)
        if changed:
            logger.info("resource_key_deactivated", key_id=key_id)
        return changed

    async def reactivate(self, key_id: str) -> bool:
        changed = await self._keys.set_active(key_id, True)
        if changed:
            logger.info("resource_key_reactivated", key_id=key_id)
        return changed

    async def remaining_quota(self, service: str) -> int:
        """Total uses left today across active keys of ``service``."""
        now = self._clock()
        keys = await self._keys.list_for_service(service)
        return sum(max(0, k.daily_limit - k.usage_on(now)) for k in keys if k.is_active)
