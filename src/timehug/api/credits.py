"""Credit balance and ledger API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.api.dependencies import get_request_context
from timehug.context import RequestContext
from timehug.database import bounded, get_db
from timehug.services.credit_service import (
    CreditBalanceResponse,
    CreditTransactionResponse,
    get_balance,
    list_transactions,
)

router = APIRouter(prefix="/api/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/balance", response_model=CreditBalanceResponse)
async def read_balance(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the authenticated user's current credit balance."""
    balance = await bounded(get_balance(db, ctx.user_id))
    return CreditBalanceResponse(user_id=ctx.user_id, credit_balance=balance)


@router.get("/transactions", response_model=list[CreditTransactionResponse])
async def read_transactions(
    limit: int = Query(50, ge=1, le=200),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's charges and refunds, newest first."""
    return await bounded(list_transactions(db, ctx.user_id, limit=limit))
