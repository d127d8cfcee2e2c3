"""Fulfillment -- turns a charged generation into an output.

Two modes, selected by ``FULFILLMENT_MODE``:

* ``placeholder``: synthesize ``{user_id}/output_{epoch_ms}.png`` and complete
  the generation immediately.
* ``async``: submit the job to the image-generation service and leave the
  generation in ``processing`` until the service calls back.

Fulfillment always runs after the charge has committed, so every path here
ends with the generation completed, failed (with refund), or still
processing and picked up by the stale sweep.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.config import settings
from timehug.database import bounded
from timehug.exceptions import Timeout
from timehug.integrations.generator_client import (
    GenerationJob,
    GeneratorClient,
    GeneratorError,
    SubmittedJob,
)
from timehug.services.events import GenerationEventPublisher
from timehug.services.generation_state import (
    GenerationStatus,
    TransitionResult,
    complete_generation,
    fail_generation,
)
from timehug.services.storage import build_object_key, public_url

log = structlog.get_logger()

PLACEHOLDER_MODE = "placeholder"
ASYNC_MODE = "async"


class GeneratorClientProtocol(Protocol):
    """Structural interface for the image-generation client."""

    async def submit(self, job: GenerationJob) -> SubmittedJob: ...


def callback_url() -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/webhooks/generation"


async def fulfil(
    db: AsyncSession,
    generation_id: uuid.UUID,
    user_id: uuid.UUID,
    input_images: list[str],
    prompt: str,
    started_at: float,
    redis: Any = None,
    generator: GeneratorClientProtocol | None = None,
) -> TransitionResult:
    """Run the configured fulfillment for a charged generation."""
    publisher = GenerationEventPublisher(redis)
    try:
        if settings.FULFILLMENT_MODE == ASYNC_MODE:
            return await _dispatch(
                db, generation_id, input_images, prompt, publisher, generator or GeneratorClient(),
            )
        return await _complete_placeholder(db, generation_id, user_id, started_at, publisher)
    except (SQLAlchemyError, Timeout):
        log.exception("fulfillment_bookkeeping_failed", generation_id=str(generation_id))
        await db.rollback()
        return TransitionResult(
            generation_id=generation_id, status=GenerationStatus.PROCESSING, changed=False,
        )


async def _complete_placeholder(
    db: AsyncSession,
    generation_id: uuid.UUID,
    user_id: uuid.UUID,
    started_at: float,
    publisher: GenerationEventPublisher,
) -> TransitionResult:
    output_image = build_object_key(user_id, "output", "output.png")
    elapsed_ms = int((time.monotonic() - started_at) * 1000)
    transition = await bounded(complete_generation(db, generation_id, output_image, elapsed_ms))
    await bounded(db.commit())
    await publisher.publish(generation_id, transition.status.value, output_url=public_url(output_image))
    return transition


async def _dispatch(
    db: AsyncSession,
    generation_id: uuid.UUID,
    input_images: list[str],
    prompt: str,
    publisher: GenerationEventPublisher,
    generator: GeneratorClientProtocol,
) -> TransitionResult:
    job = GenerationJob(
        generation_id=str(generation_id),
        input_urls=[public_url(path) for path in input_images],
        prompt=prompt,
        callback_url=callback_url(),
    )
    try:
        submitted = await generator.submit(job)
    except GeneratorError as exc:
        log.warning("generation_dispatch_failed", generation_id=str(generation_id), error=str(exc))
        transition = await bounded(fail_generation(
            db, generation_id, "Image generation service unavailable",
            refund=settings.REFUND_ON_FAILURE,
        ))
        await bounded(db.commit())
        await publisher.publish(generation_id, transition.status.value, error="Image generation service unavailable")
        return transition

    log.info("generation_dispatched", generation_id=str(generation_id), job_id=submitted.job_id)
    await publisher.publish(generation_id, GenerationStatus.PROCESSING.value)
    return TransitionResult(
        generation_id=generation_id, status=GenerationStatus.PROCESSING, changed=False,
    )
