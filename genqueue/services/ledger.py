"""Token ledger: atomic debits and credits with an append-only audit trail."""

from datetime import datetime
from typing import Callable, Optional

import structlog

from genqueue.jobs.errors import AccountNotFoundError
from genqueue.jobs.models import TokenTransaction, utcnow
from genqueue.repositories.protocols import AccountStore

logger = structlog.get_logger(__name__)


class TokenLedger:
    """Owns per-user token balances.

    Every balance change is one store call that checks the balance, writes the
    new value and appends the TokenTransaction together, so concurrent charges
    against one user serialize and the balance never goes negative.
    """

    def __init__(self, accounts: AccountStore, clock: Callable[[], datetime] = utcnow):
        self._accounts = accounts
        self._clock = clock

    async def charge(self, user_id: str, amount: int, reason: str) -> bool:
        """Debit ``amount`` tokens.

        Returns:
            True if charged, False if the balance was insufficient (nothing changed)

        Raises:
            AccountNotFoundError: If the user has no account
            ValueError: If amount is negative
        """
        if amount < 0:
            raise ValueError(f"charge amount must be >= 0, got {amount}")

        txn = await self._accounts.apply_delta(user_id, -amount, reason, self._clock())
        if txn is None:
            logger.info("tokens_charge_rejected", user_id=user_id, amount=amount, reason=reason)
            return False

        logger.info(
            "tokens_charged",
            user_id=user_id,
            amount=amount,
            reason=reason,
            balance=txn.resulting_balance,
        )
        return True

    async def refund(self, user_id: str, amount: int, reason: str) -> TokenTransaction:
        """Credit ``amount`` tokens back to the user.

        Raises:
            AccountNotFoundError: If the user has no account
            ValueError: If amount is negative
        """
        if amount < 0:
            raise ValueError(f"refund amount must be >= 0, got {amount}")

        txn = await self._accounts.apply_delta(user_id, amount, reason, self._clock())
        if txn is None:
            # A credit cannot drive the balance negative
            raise RuntimeError(f"refund for {user_id} was rejected by the store")

        logger.info(
            "tokens_refunded",
            user_id=user_id,
            amount=amount,
            reason=reason,
            balance=txn.resulting_balance,
        )
        return txn

    async def balance(self, user_id: str) -> int:
        account = await self._accounts.get(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return account.balance

    async def history(self, user_id: str, limit: int = 100) -> list[TokenTransaction]:
        """Most recent ledger entries first."""
        return await self._accounts.list_transactions(user_id, limit)

    async def open_account(
        self, user_id: str, initial_balance: int, tier: Optional[str] = None
    ):
        account = await self._accounts.create(user_id, initial_balance, tier)
        logger.info("account_opened", user_id=user_id, balance=initial_balance, tier=tier)
        return account
