"""Generation status events over Redis pub/sub, streamed to clients as SSE."""

from __future__ import annotations

import json
import uuid
from typing import Any

import structlog
from fastapi import Request

log = structlog.get_logger()

TERMINAL_EVENTS = ("completed", "failed")


def channel_for(generation_id: uuid.UUID | str) -> str:
    return f"generation:{generation_id}"


class GenerationEventPublisher:
    """Publishes generation status changes; never fails the caller."""

    def __init__(self, redis: Any) -> None:
        self._redis = redis

    async def publish(
        self,
        generation_id: uuid.UUID,
        status: str,
        output_url: str | None = None,
        error: str | None = None,
    ) -> None:
        if self._redis is None:
            return
        payload = json.dumps({
            "event": status,
            "generation_id": str(generation_id),
            "output_url": output_url,
            "error": error,
        })
        try:
            await self._redis.publish(channel_for(generation_id), payload)
        except Exception as exc:
            log.warning("generation_event_publish_failed", generation_id=str(generation_id), error=str(exc))


def is_terminal_event(data: str) -> bool:
    """Return True if the SSE payload represents a terminal event."""
    try:
        parsed = json.loads(data)
        return parsed.get("event") in TERMINAL_EVENTS
    except (json.JSONDecodeError, TypeError, AttributeError):
        return False


async def sse_event_generator(redis, channel: str, request: Request, initial: str | None = None):
    """Yield SSE-formatted events from Redis pub/sub until terminal or disconnect.

    ``initial`` is the current state of the generation; when it is already
    terminal the stream ends right after sending it.
    """
    if initial is not None:
        yield f"data: {initial}\n\n"
        if is_terminal_event(initial):
            return
    if redis is None:
        return

    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    try:
        while not await request.is_disconnected():
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                data = message["data"]
                yield f"data: {data}\n\n"
                if is_terminal_event(data):
                    break
            else:
                yield ": keepalive\n\n"
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.close()
