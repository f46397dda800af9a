"""Tier registry: maps users to their service tier."""

from typing import Mapping, Optional

import structlog

from genqueue.jobs.errors import UnknownTierError
from genqueue.jobs.models import TierConfig
from genqueue.jobs.types import TierName
from genqueue.repositories.protocols import AccountStore

logger = structlog.get_logger(__name__)


DEFAULT_TIERS: dict[str, TierConfig] = {
    TierName.FREE.value: TierConfig(
        name=TierName.FREE.value,
        max_concurrent_requests=2,
        priority_level=1,
        max_queue_size=5,
        max_attempts=3,
    ),
    TierName.PREMIUM.value: TierConfig(
        name=TierName.PREMIUM.value,
        max_concurrent_requests=5,
        priority_level=2,
        max_queue_size=20,
        max_attempts=3,
    ),
    TierName.ENTERPRISE.value: TierConfig(
        name=TierName.ENTERPRISE.value,
        max_concurrent_requests=10,
        priority_level=3,
        max_queue_size=50,
        max_attempts=5,
        token_discount_pct=20,
    ),
}


class TierRegistry:
    """Read-only tier reference data plus per-user resolution."""

    def __init__(
        self,
        accounts: AccountStore,
        tiers: Optional[Mapping[str, TierConfig]] = None,
        default_tier: str = TierName.FREE.value,
    ):
        self._accounts = accounts
        self._tiers = dict(tiers if tiers is not None else DEFAULT_TIERS)
        if default_tier not in self._tiers:
            raise ValueError(f"default tier {default_tier!r} is not configured")
        self._default = default_tier

    @property
    def default(self) -> TierConfig:
        return self._tiers[self._default]

    def get(self, name: str) -> TierConfig:
        try:
            return self._tiers[name]
        except KeyError:
            raise UnknownTierError(f"Unknown tier: {name}") from None

    async def resolve(self, user_id: str) -> TierConfig:
        """Tier for ``user_id``; the default tier when the user has no tier record.

        Raises:
            UnknownTierError: If the account names a tier that is not configured
        """
        account = await self._accounts.get(user_id)
        if account is None or not account.tier:
            return self.default
        return self.get(account.tier)
