"""CreditTransaction entity - append-only history of balance changes."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel


class CreditTransactionType(str, Enum):
    """Reason for a balance change."""

    GRANT = "grant"
    RESERVE = "reserve"
    REFUND = "refund"


class CreditTransaction(SQLModel, table=True):
    """One signed balance change, written in the same transaction as the change itself."""

    __tablename__ = "credit_transactions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    type: str = Field(max_length=20)  # CreditTransactionType value
    credits: int  # signed delta applied to balance
    generation_request_id: Optional[UUID] = Field(default=None, index=True)
    description: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=datetime.utcnow)
