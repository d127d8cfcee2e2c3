"""Read-side accessors for generations, always scoped to the caller."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.context import RequestContext
from timehug.database import bounded
from timehug.exceptions import GenerationNotFound
from timehug.services.storage import public_url

_GENERATION_COLUMNS = (
    "id, user_id, template_id, status, input_images, output_image, credits_charged, "
    "prompt_used, error_message, processing_time_ms, created_at, updated_at"
)


class GenerationRecord(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    template_id: uuid.UUID | None = None
    status: str
    input_images: list[str]
    output_image: str | None = None
    credits_charged: int
    prompt_used: str | None = None
    error_message: str | None = None
    processing_time_ms: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    output_url: str | None = Field(default=None, serialization_alias="outputUrl")


def _to_record(row) -> GenerationRecord:
    output_image = row[5]
    return GenerationRecord(
        id=row[0],
        user_id=row[1],
        template_id=row[2],
        status=row[3],
        input_images=list(row[4] or []),
        output_image=output_image,
        credits_charged=row[6],
        prompt_used=row[7],
        error_message=row[8],
        processing_time_ms=row[9],
        created_at=row[10],
        updated_at=row[11],
        output_url=public_url(output_image) if output_image else None,
    )


async def get_generation(
    db: AsyncSession, ctx: RequestContext, generation_id: uuid.UUID | str,
) -> GenerationRecord:
    """Return the caller's generation.

    Raises GenerationNotFound when the id is unknown, malformed, or owned by
    someone else; the three cases are indistinguishable to the caller.
    """
    try:
        parsed_id = uuid.UUID(str(generation_id))
    except ValueError:
        raise GenerationNotFound()

    result = await bounded(db.execute(
        text(
            f"SELECT {_GENERATION_COLUMNS} FROM generations "
            "WHERE id = :generation_id AND user_id = :user_id"
        ),
        {"generation_id": parsed_id, "user_id": ctx.user_id},
    ))
    row = result.fetchone()
    if row is None:
        raise GenerationNotFound()
    return _to_record(row)


async def list_generations(db: AsyncSession, ctx: RequestContext) -> list[GenerationRecord]:
    """Return all of the caller's generations, newest first."""
    result = await bounded(db.execute(
        text(
            f"SELECT {_GENERATION_COLUMNS} FROM generations "
            "WHERE user_id = :user_id ORDER BY created_at DESC"
        ),
        {"user_id": ctx.user_id},
    ))
    return [_to_record(row) for row in result.fetchall()]
