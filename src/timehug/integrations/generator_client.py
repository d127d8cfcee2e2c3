"""Async client for the external image-generation service.

Uses httpx.AsyncClient to submit a job.  The service renders asynchronously
and reports the outcome back through ``POST /api/webhooks/generation``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from timehug.config import settings


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class GenerationJob:
    """Payload submitted for one generation."""

    generation_id: str
    input_urls: list[str]
    prompt: str
    callback_url: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SubmittedJob:
    """Acknowledgement returned by the generation service."""

    job_id: str
    status: str = "queued"


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class GeneratorError(Exception):
    """Base class for generation service failures."""


class GeneratorTimeoutError(GeneratorError):
    """Raised when the submission exceeds its time budget."""


class GeneratorConnectionError(GeneratorError):
    """Raised when the generation service is unreachable."""


class GeneratorRejectedError(GeneratorError):
    """Raised when the service answers with an error status or bad body."""


# ---------------------------------------------------------------------------
# GeneratorClient
# ---------------------------------------------------------------------------

class GeneratorClient:
    """Submits generation jobs to the image-generation service."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.GENERATOR_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.GENERATOR_API_KEY
        self.timeout = timeout or settings.GENERATOR_TIMEOUT_SECONDS

    async def submit(self, job: GenerationJob) -> SubmittedJob:
        """Queue *job* for rendering.

        Raises:
            GeneratorTimeoutError: on request timeout.
            GeneratorConnectionError: on connection failure.
            GeneratorRejectedError: on non-2xx status or unparseable body.
        """
        payload = {
            "generation_id": job.generation_id,
            "input_images": job.input_urls,
            "prompt": job.prompt,
            "callback_url": job.callback_url,
            "metadata": job.metadata,
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            ) as client:
                response = await client.post(
                    "/v1/jobs",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise GeneratorTimeoutError(
                f"Generation service timed out after {self.timeout}s"
            ) from exc
        except httpx.ConnectError as exc:
            raise GeneratorConnectionError(
                f"Cannot connect to generation service at {self.base_url}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise GeneratorRejectedError(
                f"Generation service returned {exc.response.status_code}"
            ) from exc

        return self._parse_response(response.json())

    @staticmethod
    def _parse_response(data: Any) -> SubmittedJob:
        if not isinstance(data, dict) or not data.get("id"):
            raise GeneratorRejectedError("Response missing job 'id'")
        return SubmittedJob(job_id=str(data["id"]), status=str(data.get("status", "queued")))
