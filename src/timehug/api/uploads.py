"""Image upload endpoints.

The client sends the raw image as the request body with its MIME type in
``Content-Type``.  Stored keys are what ``POST /api/generate`` expects.
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from timehug.api.dependencies import get_request_context
from timehug.context import RequestContext
from timehug.exceptions import StorageError, ValidationError
from timehug.services.storage import (
    StorageClient,
    UploadResult,
    build_object_key,
    owns_path,
    validate_upload,
)

router = APIRouter(prefix="/api/uploads", tags=["uploads"])


def get_storage_client() -> StorageClient:
    return StorageClient()


@router.post("/{image_type}", response_model=UploadResult)
async def upload_image(
    image_type: Literal["recent", "younger"],
    request: Request,
    filename: str | None = Query(None, max_length=255),
    ctx: RequestContext = Depends(get_request_context),
    storage: StorageClient = Depends(get_storage_client),
):
    """Validate and store one input image under the caller's namespace."""
    data = await request.body()
    if not data:
        raise ValidationError("Empty upload")
    content_type = request.headers.get("content-type")
    validate_upload(data, content_type)

    path = build_object_key(ctx.user_id, image_type, filename)
    return await storage.upload(path, data, content_type.split(";")[0].strip().lower())


@router.delete("")
async def delete_image(
    path: str = Query(..., min_length=1, max_length=1024),
    ctx: RequestContext = Depends(get_request_context),
    storage: StorageClient = Depends(get_storage_client),
):
    """Remove one of the caller's stored images."""
    if not owns_path(ctx.user_id, path):
        raise ValidationError("Image paths must reference your own uploads")
    if not await storage.delete([path]):
        raise StorageError("Failed to delete image")
    return {"deleted": path}
