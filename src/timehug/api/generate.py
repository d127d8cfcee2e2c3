"""Generation API endpoints.

Provides endpoints for starting a charged generation, reading one back,
listing the caller's history, and streaming status changes.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.api.dependencies import get_redis, get_request_context
from timehug.context import RequestContext
from timehug.database import bounded, get_db
from timehug.exceptions import ValidationError
from timehug.services.entitlement import check_entitlement
from timehug.services.events import channel_for, sse_event_generator
from timehug.services.generation_state import GenerationStatus
from timehug.services.ledger import charge_generation, validate_inputs
from timehug.services.retrieval import GenerationRecord, get_generation, list_generations

router = APIRouter(prefix="/api", tags=["generations"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------

class GenerateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    recent_image_path: str | None = Field(None, max_length=1024)
    younger_image_path: str | None = Field(None, max_length=1024)
    template_id: str | None = Field(None, max_length=64)


class GenerateResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    generation_id: str
    status: str
    output_url: str | None = None
    message: str


class GenerationEnvelope(BaseModel):
    generation: GenerationRecord


def _status_message(status: GenerationStatus) -> str:
    if status == GenerationStatus.COMPLETED:
        return "Generation complete."
    if status == GenerationStatus.FAILED:
        return "Generation failed."
    return "Generation started. Poll GET /api/generate?id=<generationId> for the result."


# ---------------------------------------------------------------------------
# POST /api/generate
# ---------------------------------------------------------------------------

@router.post("/generate", response_model=GenerateResponse)
async def create_generation(
    body: GenerateRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    redis: Any = Depends(get_redis),
):
    """Check entitlement, charge the template cost, and fulfil the generation."""
    input_images = validate_inputs(ctx, body.recent_image_path, body.younger_image_path)
    entitlement = await bounded(check_entitlement(db, ctx, body.template_id))
    result = await charge_generation(db, ctx, input_images, entitlement, redis=redis)

    return GenerateResponse(
        generation_id=str(result.generation_id),
        status=result.status.value,
        output_url=result.output_url,
        message=_status_message(result.status),
    )


# ---------------------------------------------------------------------------
# GET /api/generate?id=<id>
# ---------------------------------------------------------------------------

@router.get("/generate", response_model=GenerationEnvelope)
async def read_generation(
    generation_id: str | None = Query(None, alias="id"),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Return one of the caller's generations."""
    if not generation_id:
        raise ValidationError("Generation ID required")
    record = await get_generation(db, ctx, generation_id)
    return GenerationEnvelope(generation=record)


# ---------------------------------------------------------------------------
# GET /api/generations
# ---------------------------------------------------------------------------

@router.get("/generations", response_model=list[GenerationRecord])
async def read_history(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's generations, newest first."""
    return await list_generations(db, ctx)


# ---------------------------------------------------------------------------
# GET /api/generations/{generation_id}/events -- SSE stream
# ---------------------------------------------------------------------------

@router.get("/generations/{generation_id}/events")
async def generation_events(
    generation_id: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    redis: Any = Depends(get_redis),
):
    """Stream generation status events via Server-Sent Events (SSE)."""
    record = await get_generation(db, ctx, generation_id)
    initial = json.dumps({
        "event": record.status,
        "generation_id": str(record.id),
        "output_url": record.output_url,
        "error": record.error_message,
    })

    return StreamingResponse(
        sse_event_generator(redis, channel_for(record.id), request, initial=initial),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )
