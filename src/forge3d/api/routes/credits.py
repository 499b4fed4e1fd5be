"""Credit balance API endpoints.

- GET /credits - Caller's balance and number of completed generations
- GET /credits/transactions - Caller's credit history (grants, reservations, refunds)

Purchasing credits is not handled here; operators top up balances with the
grant_credits CLI.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from forge3d.api.dependencies import get_current_user_id, get_settings, get_uow_factory
from forge3d.core.config import Settings

router = APIRouter(prefix="/credits", tags=["credits"])


class CreditBalanceResponse(BaseModel):
    """Response model for balance queries."""

    user_id: str
    balance: int = Field(..., description="Generations the user can still start")
    total_generated: int = Field(..., description="Generations completed so far")


class CreditTransactionDTO(BaseModel):
    """One balance change."""

    id: UUID
    type: str = Field(..., description="grant, reserve or refund")
    credits: int = Field(..., description="Signed change applied to the balance")
    generation_request_id: UUID | None = None
    description: str | None = None
    created_at: datetime


@router.get("", response_model=CreditBalanceResponse)
async def get_credit_balance(
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
    uow_factory=Depends(get_uow_factory),
) -> CreditBalanceResponse:
    """Return the caller's balance, creating the account with the default balance on first use."""
    async with await uow_factory() as uow:
        account = await uow.credits.get_or_create(user_id, settings.default_credit_balance)

    return CreditBalanceResponse(
        user_id=account.user_id,
        balance=account.balance,
        total_generated=account.total_generated,
    )


@router.get("/transactions", response_model=list[CreditTransactionDTO])
async def list_credit_transactions(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    uow_factory=Depends(get_uow_factory),
) -> list[CreditTransactionDTO]:
    """Return the caller's credit history, newest first."""
    async with await uow_factory() as uow:
        transactions = await uow.credits.list_transactions(user_id, limit=limit, offset=offset)

    return [
        CreditTransactionDTO(
            id=t.id,
            type=t.type,
            credits=t.credits,
            generation_request_id=t.generation_request_id,
            description=t.description,
            created_at=t.created_at,
        )
        for t in transactions
    ]
