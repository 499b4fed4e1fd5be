"""CreditAccount repository for forge3d.

Provides the credit ledger: lazy account creation, atomic reserve/refund of a
single generation credit and the transaction history that backs every change.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from forge3d.models.credit_account import CreditAccount
from forge3d.models.credit_transaction import CreditTransaction, CreditTransactionType


class CreditAccountRepository:
    """Repository for CreditAccount and CreditTransaction entities.

    Balance changes are single UPDATE statements evaluated by the database, so
    concurrent reservations against the same account can never overdraw it.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_user(self, user_id: str) -> CreditAccount | None:
        """Retrieve a credit account by user id, refreshing any cached copy.

        Args:
            user_id: Identity of the account holder

        Returns:
            CreditAccount if found, None otherwise
        """
        result = await self.session.execute(
            select(CreditAccount)
            .where(CreditAccount.user_id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str, default_balance: int) -> CreditAccount:
        """Return the user's account, creating it with default_balance on first use.

        Uses INSERT ... ON CONFLICT DO NOTHING followed by a read, so two first
        requests from the same user end up sharing one account instead of
        failing on the duplicate key.

        Args:
            user_id: Identity of the account holder
            default_balance: Starting balance for a new account

        Returns:
            The existing or newly created account
        """
        account = await self.get_by_user(user_id)
        if account is not None:
            return account

        now = datetime.utcnow()
        insert = sqlite_insert if self.session.bind.dialect.name == "sqlite" else pg_insert
        stmt = (
            insert(CreditAccount)
            .values(
                user_id=user_id,
                balance=default_balance,
                total_generated=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 1 and default_balance > 0:  # type: ignore[attr-defined]
            await self._record(user_id, CreditTransactionType.GRANT, default_balance, None, "initial balance")

        account = await self.get_by_user(user_id)
        if account is None:
            raise RuntimeError(f"Credit account for {user_id} vanished after insert")
        return account

    async def reserve(
        self, user_id: str, generation_request_id: UUID | None = None
    ) -> bool:
        """Atomically take one credit if the balance allows it.

        Query explanation:
        - UPDATE credit_accounts SET balance = balance - 1
        - WHERE user_id = :user_id AND balance >= 1
        - rowcount 0 means the balance was exhausted (or the account is missing)

        Args:
            user_id: Identity of the account holder
            generation_request_id: Request the credit is reserved for, if already known

        Returns:
            True if a credit was reserved, False on insufficient balance
        """
        result = await self.session.execute(
            update(CreditAccount)
            .where(
                CreditAccount.user_id == user_id,  # type: ignore[arg-type]
                CreditAccount.balance >= 1,  # type: ignore[operator]
            )
            .values(balance=CreditAccount.balance - 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            return False
        await self._record(
            user_id, CreditTransactionType.RESERVE, -1, generation_request_id, "generation reserved"
        )
        return True

    async def refund(
        self,
        user_id: str,
        generation_request_id: UUID | None = None,
        description: str = "generation refunded",
    ) -> None:
        """Return one previously reserved credit.

        Callers must only invoke this after winning the conditional transition
        that released the reservation, so each reservation is refunded at most once.

        Raises:
            ValueError: If the account does not exist
        """
        result = await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)  # type: ignore[arg-type]
            .values(balance=CreditAccount.balance + 1, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise ValueError(f"No credit account for user {user_id}")
        await self._record(user_id, CreditTransactionType.REFUND, 1, generation_request_id, description)

    async def increment_generated(self, user_id: str) -> None:
        """Count a completed generation against the account."""
        await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)  # type: ignore[arg-type]
            .values(
                total_generated=CreditAccount.total_generated + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def grant(
        self, user_id: str, credits: int, default_balance: int = 0, description: str | None = None
    ) -> CreditAccount:
        """Add credits to an account (purchase or admin top-up).

        Args:
            user_id: Identity of the account holder
            credits: Positive number of credits to add
            default_balance: Starting balance if the account has to be created
            description: Optional note stored on the transaction

        Returns:
            Updated account

        Raises:
            ValueError: If credits is not positive
        """
        if credits <= 0:
            raise ValueError("credits must be positive")
        await self.get_or_create(user_id, default_balance)
        await self.session.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)  # type: ignore[arg-type]
            .values(balance=CreditAccount.balance + credits, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._record(user_id, CreditTransactionType.GRANT, credits, None, description)
        account = await self.get_by_user(user_id)
        assert account is not None
        return account

    async def list_transactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[CreditTransaction]:
        """Retrieve a user's credit history, newest first."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)  # type: ignore[arg-type]
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _record(
        self,
        user_id: str,
        type_: CreditTransactionType,
        credits: int,
        generation_request_id: UUID | None,
        description: str | None,
    ) -> None:
        self.session.add(
            CreditTransaction(
                user_id=user_id,
                type=type_.value,
                credits=credits,
                generation_request_id=generation_request_id,
                description=description,
            )
        )
        await self.session.flush()
