"""Callback endpoint for the image-generation service."""

from __future__ import annotations

import hashlib
import hmac
import uuid
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.api.dependencies import get_redis
from timehug.config import settings
from timehug.database import bounded, get_db
from timehug.exceptions import Unauthorized, ValidationError
from timehug.services.events import GenerationEventPublisher
from timehug.services.generation_state import complete_generation, fail_generation
from timehug.services.storage import public_url

log = structlog.get_logger()

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class GenerationCallback(BaseModel):
    generation_id: uuid.UUID
    status: Literal["completed", "failed"]
    output_image: str | None = Field(None, max_length=1024)
    error: str | None = Field(None, max_length=2000)
    processing_time_ms: int | None = Field(None, ge=0)


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Check a hex HMAC-SHA256 of the raw body in constant time.

    An unset secret rejects every request.
    """
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.lower())


@router.post("/generation")
async def generation_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: Any = Depends(get_redis),
):
    """Apply a terminal outcome reported by the generation service.

    Replays are harmless: a generation that already reached a terminal state
    is reported back with ``changed: false``.
    """
    payload = await request.body()
    signature = request.headers.get("x-signature", "")
    if not verify_signature(payload, signature, settings.GENERATION_WEBHOOK_SECRET):
        raise Unauthorized("Invalid signature")

    try:
        callback = GenerationCallback.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed callback payload") from exc

    if callback.status == "completed":
        if not callback.output_image:
            raise ValidationError("output_image is required for completed generations")
        transition = await bounded(complete_generation(
            db, callback.generation_id, callback.output_image, callback.processing_time_ms,
        ))
    else:
        if not callback.error:
            raise ValidationError("error is required for failed generations")
        transition = await bounded(fail_generation(
            db, callback.generation_id, callback.error, refund=settings.REFUND_ON_FAILURE,
        ))
    await bounded(db.commit())

    if transition.changed:
        await GenerationEventPublisher(redis).publish(
            callback.generation_id,
            transition.status.value,
            output_url=public_url(callback.output_image) if callback.output_image else None,
            error=callback.error,
        )
    log.info(
        "generation_callback_applied",
        generation_id=str(callback.generation_id),
        status=transition.status.value,
        changed=transition.changed,
    )
    return {"status": transition.status.value, "changed": transition.changed}
