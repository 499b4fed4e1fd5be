"""CreditAccount entity - per-user generation credit balance."""

from datetime import datetime

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel


class CreditAccount(SQLModel, table=True):
    """CreditAccount holds the number of generations a user can still start.

    balance is never negative; the CHECK constraint backs the conditional
    decrement in CreditAccountRepository.reserve().
    """

    __tablename__ = "credit_accounts"  # type: ignore[assignment]
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),)

    user_id: str = Field(primary_key=True, max_length=255)
    balance: int = Field(default=0, ge=0)
    total_generated: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
