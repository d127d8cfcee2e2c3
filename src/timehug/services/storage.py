"""Object storage -- upload validation, key layout, public URLs.

Objects live in one bucket under ``{user_id}/{type}_{epoch_ms}.{ext}``.
"""

from __future__ import annotations

import io
import time
import uuid
from typing import Literal

import httpx
import structlog
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from timehug.config import settings
from timehug.exceptions import StorageError, Timeout, ValidationError

log = structlog.get_logger()

ImageType = Literal["recent", "younger", "output"]

ALLOWED_TYPES = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
    "image/heic": None,
    "image/heif": None,
}

_CACHE_CONTROL = "3600"


class UploadResult(BaseModel):
    path: str
    url: str


# ---------------------------------------------------------------------------
# Validation and key helpers
# ---------------------------------------------------------------------------

def validate_upload(data: bytes, content_type: str | None) -> None:
    """Reject oversized or unsupported images before they reach the bucket.

    Formats Pillow can read without plugins are also decoded, and must match
    the declared MIME type.
    """
    if len(data) > settings.MAX_UPLOAD_BYTES:
        limit_mb = settings.MAX_UPLOAD_BYTES // (1024 * 1024)
        raise ValidationError(f"File size exceeds {limit_mb}MB limit", reason="FILE_TOO_LARGE")

    mime = (content_type or "").split(";")[0].strip().lower()
    if mime not in ALLOWED_TYPES:
        raise ValidationError(
            "File type not supported. Please use JPEG, PNG, WebP, GIF, or HEIC.",
            reason="INVALID_TYPE",
        )

    expected_format = ALLOWED_TYPES[mime]
    if expected_format is None:
        return
    try:
        with Image.open(io.BytesIO(data)) as img:
            actual_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise ValidationError("File is not a readable image", reason="INVALID_TYPE")
    if actual_format != expected_format:
        raise ValidationError(
            f"File content is {actual_format}, not {mime}", reason="INVALID_TYPE",
        )


def build_object_key(
    user_id: uuid.UUID,
    image_type: ImageType,
    filename: str | None = None,
    timestamp_ms: int | None = None,
) -> str:
    """Return ``{user_id}/{type}_{timestamp}.{ext}``; extension defaults to jpg."""
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    extension = "jpg"
    if filename and "." in filename:
        candidate = filename.rsplit(".", 1)[1].strip().lower()
        if candidate.isalnum():
            extension = candidate
    return f"{user_id}/{image_type}_{ts}.{extension}"


def public_url(path: str) -> str:
    """Resolve a stored key into its publicly fetchable URL."""
    base = settings.STORAGE_URL.rstrip("/")
    return f"{base}/storage/v1/object/public/{settings.STORAGE_BUCKET}/{path.lstrip('/')}"


def owns_path(user_id: uuid.UUID, path: str) -> bool:
    """True when *path* lives inside the user's namespace."""
    prefix = f"{user_id}/"
    return path.startswith(prefix) and len(path) > len(prefix) and ".." not in path


# ---------------------------------------------------------------------------
# StorageClient
# ---------------------------------------------------------------------------

class StorageClient:
    """Async client for the storage service's object API."""

    def __init__(
        self,
        base_url: str | None = None,
        bucket: str | None = None,
        service_key: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.STORAGE_URL).rstrip("/")
        self.bucket = bucket or settings.STORAGE_BUCKET
        self.service_key = service_key if service_key is not None else settings.STORAGE_SERVICE_KEY
        self.timeout = timeout or settings.STORE_TIMEOUT_SECONDS

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }

    async def upload(self, path: str, data: bytes, content_type: str) -> UploadResult:
        """Store *data* at *path* without overwriting an existing object."""
        headers = self._headers() | {
            "Content-Type": content_type,
            "cache-control": f"max-age={_CACHE_CONTROL}",
            "x-upsert": "false",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=httpx.Timeout(self.timeout),
            ) as client:
                response = await client.post(
                    f"/storage/v1/object/{self.bucket}/{path}",
                    content=data,
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise Timeout(f"Upload timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            log.warning("storage_upload_failed", path=path, error=str(exc))
            raise StorageError() from exc

        return UploadResult(path=path, url=public_url(path))

    async def delete(self, paths: list[str]) -> bool:
        """Remove objects; returns False when the storage service refused."""
        if not paths:
            return True
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=httpx.Timeout(self.timeout),
            ) as client:
                response = await client.request(
                    "DELETE",
                    f"/storage/v1/object/{self.bucket}",
                    json={"prefixes": paths},
                    headers=self._headers(),
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning("storage_delete_failed", paths=paths, error=str(exc))
            return False
        return True
