"""Generation record state machine.

State machine: PROCESSING -> COMPLETED | FAILED

Transitions are conditional updates guarded by ``status = 'processing'``, so
a second notification for a generation that already reached a terminal state
matches no row and becomes a no-op.  Callers own the transaction: nothing in
this module commits.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.config import settings
from timehug.exceptions import GenerationNotFound, ValidationError
from timehug.services.audit_logger import AuditLogger
from timehug.services.credit_service import refund_generation_charge

audit = AuditLogger()


class GenerationStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})


def can_transition(current: str, target: str) -> bool:
    """Only processing generations move, and only into a terminal state."""
    return (
        GenerationStatus(current) == GenerationStatus.PROCESSING
        and GenerationStatus(target) in TERMINAL_STATUSES
    )


@dataclass(frozen=True)
class TransitionResult:
    generation_id: uuid.UUID
    status: GenerationStatus
    changed: bool
    user_id: uuid.UUID | None = None
    refunded: bool = False


async def _current_status(db: AsyncSession, generation_id: uuid.UUID) -> GenerationStatus:
    result = await db.execute(
        text("SELECT status FROM generations WHERE id = :generation_id"),
        {"generation_id": generation_id},
    )
    row = result.fetchone()
    if row is None:
        raise GenerationNotFound()
    return GenerationStatus(row[0])


async def _unchanged(db: AsyncSession, generation_id: uuid.UUID) -> TransitionResult:
    """Resolve a transition whose conditional update matched nothing.

    The generation is already terminal, so the notification is a duplicate.
    """
    status = await _current_status(db, generation_id)
    return TransitionResult(generation_id=generation_id, status=status, changed=False)


async def complete_generation(
    db: AsyncSession,
    generation_id: uuid.UUID,
    output_image: str,
    processing_time_ms: int | None = None,
) -> TransitionResult:
    """Move a processing generation to COMPLETED with its output reference."""
    if not output_image:
        raise ValidationError("A completed generation requires an output image")

    result = await db.execute(
        text(
            "UPDATE generations "
            "SET status = 'completed', output_image = :output_image, "
            "processing_time_ms = :processing_time_ms, updated_at = :now "
            "WHERE id = :generation_id AND status = 'processing' "
            "RETURNING user_id, credits_charged"
        ),
        {
            "generation_id": generation_id,
            "output_image": output_image,
            "processing_time_ms": processing_time_ms,
            "now": datetime.now(timezone.utc),
        },
    )
    row = result.fetchone()
    if row is None:
        return await _unchanged(db, generation_id)

    audit.log_generation_transition(
        generation_id, row[0], GenerationStatus.PROCESSING.value, GenerationStatus.COMPLETED.value,
    )
    return TransitionResult(
        generation_id=generation_id,
        status=GenerationStatus.COMPLETED,
        changed=True,
        user_id=row[0],
    )


async def fail_generation(
    db: AsyncSession,
    generation_id: uuid.UUID,
    error_message: str,
    refund: bool = True,
) -> TransitionResult:
    """Move a processing generation to FAILED.

    With ``refund`` set, a committed charge for the generation is reversed by
    a compensating refund row written in the same transaction.  Generations
    whose charge never committed get no refund.
    """
    if not error_message:
        raise ValidationError("A failed generation requires an error message")

    result = await db.execute(
        text(
            "UPDATE generations "
            "SET status = 'failed', error_message = :error_message, updated_at = :now "
            "WHERE id = :generation_id AND status = 'processing' "
            "RETURNING user_id, credits_charged"
        ),
        {
            "generation_id": generation_id,
            "error_message": error_message,
            "now": datetime.now(timezone.utc),
        },
    )
    row = result.fetchone()
    if row is None:
        return await _unchanged(db, generation_id)

    user_id, credits_charged = row[0], row[1]
    audit.log_generation_transition(
        generation_id, user_id, GenerationStatus.PROCESSING.value,
        GenerationStatus.FAILED.value, detail=error_message,
    )

    refunded = False
    if refund:
        new_balance = await refund_generation_charge(db, user_id, generation_id, credits_charged)
        refunded = new_balance is not None

    return TransitionResult(
        generation_id=generation_id,
        status=GenerationStatus.FAILED,
        changed=True,
        user_id=user_id,
        refunded=refunded,
    )


async def fail_stale_generations(
    db: AsyncSession,
    older_than: timedelta,
    limit: int = 500,
    refund: bool | None = None,
) -> list[TransitionResult]:
    """Fail generations stuck in processing past their window.

    Charges are refunded according to ``REFUND_ON_FAILURE`` unless *refund*
    says otherwise.
    """
    if refund is None:
        refund = settings.REFUND_ON_FAILURE
    cutoff = datetime.now(timezone.utc) - older_than
    result = await db.execute(
        text(
            "SELECT id FROM generations "
            "WHERE status = 'processing' AND created_at < :cutoff "
            "ORDER BY created_at LIMIT :limit"
        ),
        {"cutoff": cutoff, "limit": limit},
    )
    transitions = []
    for row in result.fetchall():
        transition = await fail_generation(db, row[0], "Generation timed out", refund=refund)
        if transition.changed:
            transitions.append(transition)
    return transitions
