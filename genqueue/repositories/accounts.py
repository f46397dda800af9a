"""Repository for token accounts and the token ledger (PostgreSQL)."""

from datetime import datetime
from typing import Optional

import structlog

from genqueue.core.resilience import with_db_retry
from genqueue.jobs.errors import AccountNotFoundError
from genqueue.jobs.models import TokenTransaction, UserAccount

logger = structlog.get_logger(__name__)


class AccountRepository:
    """Repository for account balances and their transactions."""

    def __init__(self, pool):
        self._pool = pool

    async def get(self, user_id: str) -> Optional[UserAccount]:
        query = "SELECT * FROM user_accounts WHERE user_id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, user_id)
        return self._row_to_account(row) if row else None

    async def create(
        self, user_id: str, initial_balance: int, tier: Optional[str] = None
    ) -> UserAccount:
        if initial_balance < 0:
            raise ValueError("initial_balance must be >= 0")
        query = """
            INSERT INTO user_accounts (user_id, balance, initial_balance, tier)
            VALUES ($1, $2, $2, $3)
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, user_id, initial_balance, tier)
        logger.info("account_created", user_id=user_id, balance=initial_balance, tier=tier)
        return self._row_to_account(row)

    async def apply_delta(
        self, user_id: str, delta: int, reason: str, now: datetime
    ) -> Optional[TokenTransaction]:
        """Conditionally move the balance and append the ledger row.

        The balance guard lives in the UPDATE's WHERE clause, so concurrent
        debits serialize on the row lock and none can overdraw.
        """
        update_query = """
            UPDATE user_accounts SET
                balance = balance + $2,
                updated_at = $3
            WHERE user_id = $1 AND balance + $2 >= 0
            RETURNING balance
        """
        ledger_query = """
            INSERT INTO token_transactions (user_id, delta, reason, resulting_balance, created_at)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """

        async def _op(conn):
            async with conn.transaction():
                balance = await conn.fetchval(update_query, user_id, delta, now)
                if balance is None:
                    exists = await conn.fetchval(
                        "SELECT 1 FROM user_accounts WHERE user_id = $1", user_id
                    )
                    if not exists:
                        raise AccountNotFoundError(user_id)
                    return None
                return await conn.fetchrow(
                    ledger_query, user_id, delta, reason, balance, now
                )

        row = await with_db_retry(self._pool, _op)
        if row is None:
            logger.info("balance_insufficient", user_id=user_id, delta=delta)
            return None
        return self._row_to_transaction(row)

    async def list_transactions(
        self, user_id: str, limit: int = 100
    ) -> list[TokenTransaction]:
        query = """
            SELECT * FROM token_transactions
            WHERE user_id = $1
            ORDER BY id DESC
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, user_id, limit)
        return [self._row_to_transaction(row) for row in rows]

    def _row_to_account(self, row) -> UserAccount:
        return UserAccount(
            user_id=row["user_id"],
            balance=row["balance"],
            initial_balance=row["initial_balance"],
            tier=row["tier"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_transaction(self, row) -> TokenTransaction:
        return TokenTransaction(
            id=row["id"],
            user_id=row["user_id"],
            delta=row["delta"],
            reason=row["reason"],
            resulting_balance=row["resulting_balance"],
            created_at=row["created_at"],
        )
