"""Template catalogue endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.api.dependencies import get_request_context
from timehug.context import RequestContext
from timehug.database import bounded, get_db
from timehug.services.entitlement import TemplateResponse, list_active_templates

router = APIRouter(prefix="/api/templates", tags=["templates"])


@router.get("", response_model=list[TemplateResponse])
async def read_templates(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Return all active templates with their credit cost."""
    return await bounded(list_active_templates(db))
