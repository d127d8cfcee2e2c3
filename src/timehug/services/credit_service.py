"""Credit management service -- balance queries, atomic deductions, and refunds."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.exceptions import InsufficientCredits, NotFound
from timehug.services.audit_logger import AuditLogger

audit = AuditLogger()

CHARGE_TXN_TYPE = "generation"
REFUND_TXN_TYPE = "refund"


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class CreditBalanceResponse(BaseModel):
    user_id: uuid.UUID
    credit_balance: int


class CreditTransactionResponse(BaseModel):
    id: uuid.UUID
    amount: int
    type: str
    generation_id: uuid.UUID | None = None
    description: str | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Return the current credit balance for a user (0 when no profile exists)."""
    result = await db.execute(
        text("SELECT credit_balance FROM profiles WHERE id = :user_id"),
        {"user_id": user_id},
    )
    row = result.fetchone()
    if row is None or row[0] is None:
        return 0
    return row[0]


async def ensure_profile(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Create an empty profile for a user who has none yet."""
    now = datetime.now(timezone.utc)
    await db.execute(
        text(
            "INSERT INTO profiles (id, credit_balance, created_at, updated_at) "
            "VALUES (:user_id, 0, :now, :now) "
            "ON CONFLICT (id) DO NOTHING"
        ),
        {"user_id": user_id, "now": now},
    )


async def _insert_transaction(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    generation_id: uuid.UUID | None,
    description: str | None,
) -> None:
    await db.execute(
        text(
            "INSERT INTO credit_transactions "
            "(id, user_id, amount, type, generation_id, description, created_at) "
            "VALUES (:id, :user_id, :amount, :type, :generation_id, :description, :created_at)"
        ),
        {
            "id": uuid.uuid4(),
            "user_id": user_id,
            "amount": amount,
            "type": txn_type,
            "generation_id": generation_id,
            "description": description,
            "created_at": datetime.now(timezone.utc),
        },
    )


async def atomic_deduct_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str = CHARGE_TXN_TYPE,
    generation_id: uuid.UUID | None = None,
    description: str | None = None,
) -> int:
    """Atomically deduct credits using UPDATE ... WHERE balance >= amount.

    The debit and its ledger row are written in the caller's transaction, so
    they commit or roll back together.  The unique (generation_id, type)
    index makes a second charge for the same generation fail instead of
    double-spending.

    Returns the new balance on success.
    Raises InsufficientCredits if the conditional update matched no row.
    """
    result = await db.execute(
        text(
            "UPDATE profiles "
            "SET credit_balance = credit_balance - :amount, updated_at = :now "
            "WHERE id = :user_id AND credit_balance >= :amount "
            "RETURNING credit_balance"
        ),
        {"user_id": user_id, "amount": amount, "now": datetime.now(timezone.utc)},
    )
    row = result.fetchone()
    if row is None:
        available = await get_balance(db, user_id)
        raise InsufficientCredits(required=amount, available=available)

    new_balance: int = row[0]

    # Negative amount for deduction
    await _insert_transaction(db, user_id, -amount, txn_type, generation_id, description)
    audit.log_credit_event(user_id, -amount, txn_type, generation_id=generation_id)

    return new_balance


async def add_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    generation_id: uuid.UUID | None = None,
    description: str | None = None,
) -> int:
    """Add credits to a user's balance and record the transaction.

    Returns the new balance.
    """
    result = await db.execute(
        text(
            "UPDATE profiles "
            "SET credit_balance = credit_balance + :amount, updated_at = :now "
            "WHERE id = :user_id "
            "RETURNING credit_balance"
        ),
        {"user_id": user_id, "amount": amount, "now": datetime.now(timezone.utc)},
    )
    row = result.fetchone()
    if row is None:
        raise NotFound("Profile not found")

    new_balance: int = row[0]

    await _insert_transaction(db, user_id, amount, txn_type, generation_id, description)
    audit.log_credit_event(user_id, amount, txn_type, generation_id=generation_id)

    return new_balance


async def refund_generation_charge(
    db: AsyncSession,
    user_id: uuid.UUID,
    generation_id: uuid.UUID,
    amount: int,
) -> int | None:
    """Write the compensating credit for a charged generation.

    Only refunds when a charge row exists for the generation and no refund
    has been written yet.  Returns the new balance, or None when nothing was
    refunded.
    """
    result = await db.execute(
        text("SELECT type FROM credit_transactions WHERE generation_id = :generation_id"),
        {"generation_id": generation_id},
    )
    types = {row[0] for row in result.fetchall()}
    if CHARGE_TXN_TYPE not in types or REFUND_TXN_TYPE in types:
        return None

    return await add_credits(
        db=db,
        user_id=user_id,
        amount=amount,
        txn_type=REFUND_TXN_TYPE,
        generation_id=generation_id,
        description="Refund: generation failed",
    )


async def list_transactions(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 50,
) -> list[CreditTransactionResponse]:
    """Return the user's ledger rows, newest first."""
    result = await db.execute(
        text(
            "SELECT id, amount, type, generation_id, description, created_at "
            "FROM credit_transactions WHERE user_id = :user_id "
            "ORDER BY created_at DESC LIMIT :limit"
        ),
        {"user_id": user_id, "limit": limit},
    )
    return [
        CreditTransactionResponse(
            id=row[0],
            amount=row[1],
            type=row[2],
            generation_id=row[3],
            description=row[4],
            created_at=row[5],
        )
        for row in result.fetchall()
    ]
