"""Ledger transaction -- create, charge, and fulfil one generation.

Sequence:
1. Insert the generation in ``processing`` with the cost and prompt snapshot,
   and commit.  Nothing has been charged yet.
2. In a single transaction: conditionally decrement the balance
   (``credit_balance >= cost``) and append the charge row that references the
   generation.  Both commit together or not at all.
3. Fulfil (placeholder completion or dispatch to the generation service).

If step 2 fails, the generation from step 1 is moved to ``failed``.  When the
failure was a timeout on a commit that did land, the failure transition finds
the charge row and refunds it, so the ledger never keeps an unexplained
debit.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.context import RequestContext
from timehug.database import async_session_factory, bounded
from timehug.exceptions import (
    CreditDeductionFailed,
    GenerationCreateFailed,
    InsufficientCredits,
    Timeout,
    ValidationError,
)
from timehug.services.credit_service import CHARGE_TXN_TYPE, atomic_deduct_credits, ensure_profile
from timehug.services.entitlement import Entitlement, ResolvedTemplate
from timehug.services.fulfillment import GeneratorClientProtocol, fulfil
from timehug.services.generation_state import GenerationStatus, TransitionResult, fail_generation
from timehug.services.storage import owns_path, public_url

log = structlog.get_logger()

# Fulfillment tasks still running, possibly after their request was cancelled.
background_fulfillments: set[asyncio.Task] = set()


@dataclass(frozen=True)
class ChargeResult:
    generation_id: uuid.UUID
    status: GenerationStatus
    new_balance: int
    output_image: str | None = None

    @property
    def output_url(self) -> str | None:
        return public_url(self.output_image) if self.output_image else None


def validate_inputs(ctx: RequestContext, recent_path: str | None, younger_path: str | None) -> list[str]:
    """Return ``[recent, younger]`` or raise ValidationError."""
    if not recent_path or not younger_path:
        raise ValidationError("Both recent and younger image paths are required")
    for path in (recent_path, younger_path):
        if not owns_path(ctx.user_id, path):
            raise ValidationError("Image paths must reference your own uploads")
    return [recent_path, younger_path]


async def _insert_generation(
    db: AsyncSession,
    generation_id: uuid.UUID,
    user_id: uuid.UUID,
    template: ResolvedTemplate,
    input_images: list[str],
) -> None:
    now = datetime.now(timezone.utc)
    await db.execute(
        text(
            "INSERT INTO generations "
            "(id, user_id, template_id, status, input_images, credits_charged, "
            "prompt_used, created_at, updated_at) "
            "VALUES (:id, :user_id, :template_id, 'processing', :input_images, "
            ":credits_charged, :prompt_used, :now, :now)"
        ),
        {
            "id": generation_id,
            "user_id": user_id,
            "template_id": template.id,
            "input_images": input_images,
            "credits_charged": template.credit_cost,
            "prompt_used": template.prompt,
            "now": now,
        },
    )


async def _abort_generation(db: AsyncSession, generation_id: uuid.UUID, reason: str) -> None:
    """Move an uncharged (or ambiguously charged) generation to failed."""
    try:
        await bounded(fail_generation(db, generation_id, reason, refund=True))
        await bounded(db.commit())
    except (SQLAlchemyError, Timeout):
        # Left in processing; the stale sweep fails it later.
        log.exception("generation_abort_failed", generation_id=str(generation_id))
        await db.rollback()


async def create_generation(
    db: AsyncSession,
    ctx: RequestContext,
    template: ResolvedTemplate,
    input_images: list[str],
) -> uuid.UUID:
    """Step 1: persist the generation in processing.  No charge happens here.

    A caller without a profile gets an empty one first, so a free template
    works for them and the generation has an owner row to reference.
    """
    generation_id = uuid.uuid4()
    try:
        await bounded(ensure_profile(db, ctx.user_id))
        await bounded(_insert_generation(db, generation_id, ctx.user_id, template, input_images))
        await bounded(db.commit())
    except SQLAlchemyError as exc:
        await db.rollback()
        log.error("generation_create_failed", user_id=str(ctx.user_id), error=str(exc))
        raise GenerationCreateFailed() from exc
    except Timeout:
        await db.rollback()
        raise
    return generation_id


async def debit_generation(
    db: AsyncSession,
    ctx: RequestContext,
    generation_id: uuid.UUID,
    template: ResolvedTemplate,
) -> int:
    """Steps 2 and 3: debit the balance and write the charge row atomically."""
    try:
        new_balance = await bounded(atomic_deduct_credits(
            db,
            ctx.user_id,
            template.credit_cost,
            txn_type=CHARGE_TXN_TYPE,
            generation_id=generation_id,
            description=f"Generation: {template.name}",
        ))
        await bounded(db.commit())
    except InsufficientCredits:
        await db.rollback()
        log.info(
            "generation_charge_refused",
            generation_id=str(generation_id),
            required=template.credit_cost,
        )
        await _abort_generation(db, generation_id, "Insufficient credits")
        raise
    except (SQLAlchemyError, Timeout) as exc:
        await db.rollback()
        log.error("credit_deduction_failed", generation_id=str(generation_id), error=str(exc))
        await _abort_generation(db, generation_id, "Failed to process credits")
        raise CreditDeductionFailed() from exc
    return new_balance


async def charge_generation(
    db: AsyncSession,
    ctx: RequestContext,
    input_images: list[str],
    entitlement: Entitlement,
    redis: Any = None,
    generator: GeneratorClientProtocol | None = None,
    session_factory: Callable[[], AsyncSession] | None = None,
) -> ChargeResult:
    """Create, charge, and fulfil a generation for the caller.

    ``input_images`` must already have passed ``validate_inputs``.
    Fulfillment runs in a task on its own session (from *session_factory*),
    so a cancelled request neither interrupts it nor closes its session.
    """
    template = entitlement.template
    started_at = time.monotonic()

    generation_id = await create_generation(db, ctx, template, input_images)
    new_balance = await debit_generation(db, ctx, generation_id, template)
    log.info(
        "generation_charged",
        generation_id=str(generation_id),
        template=template.slug,
        cost=template.credit_cost,
        new_balance=new_balance,
    )

    task = asyncio.ensure_future(_fulfil_in_own_session(
        session_factory or async_session_factory,
        generation_id,
        ctx.user_id,
        input_images,
        template.prompt,
        started_at,
        redis=redis,
        generator=generator,
    ))
    background_fulfillments.add(task)
    task.add_done_callback(_collect_fulfillment)
    transition = await asyncio.shield(task)

    output_image = None
    if transition.status == GenerationStatus.COMPLETED:
        output_image = await _load_output_image(db, generation_id)

    return ChargeResult(
        generation_id=generation_id,
        status=transition.status,
        new_balance=new_balance,
        output_image=output_image,
    )


async def _fulfil_in_own_session(
    session_factory: Callable[[], AsyncSession],
    generation_id: uuid.UUID,
    user_id: uuid.UUID,
    input_images: list[str],
    prompt: str,
    started_at: float,
    redis: Any = None,
    generator: GeneratorClientProtocol | None = None,
) -> TransitionResult:
    async with session_factory() as session:
        return await fulfil(
            session,
            generation_id,
            user_id,
            input_images,
            prompt,
            started_at,
            redis=redis,
            generator=generator,
        )


def _collect_fulfillment(task: asyncio.Task) -> None:
    background_fulfillments.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("fulfillment_task_failed", error=str(exc), exc_info=exc)


async def _load_output_image(db: AsyncSession, generation_id: uuid.UUID) -> str | None:
    result = await bounded(db.execute(
        text("SELECT output_image FROM generations WHERE id = :generation_id"),
        {"generation_id": generation_id},
    ))
    row = result.fetchone()
    return row[0] if row else None
