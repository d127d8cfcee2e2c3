"""Entitlement check -- resolve the template and compare it to the balance.

Read-only: nothing here mutates the store.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from timehug.context import RequestContext
from timehug.config import settings
from timehug.exceptions import InsufficientCredits, TemplateNotFound
from timehug.services.credit_service import get_balance

_TEMPLATE_COLUMNS = "id, slug, name, description, prompt, credit_cost"


@dataclass(frozen=True)
class ResolvedTemplate:
    """Active template snapshot taken at entitlement time."""

    id: uuid.UUID
    slug: str
    name: str
    description: str | None
    prompt: str
    credit_cost: int


@dataclass(frozen=True)
class Entitlement:
    template: ResolvedTemplate
    balance: int


class TemplateResponse(BaseModel):
    id: uuid.UUID
    slug: str
    name: str
    description: str | None = None
    credit_cost: int


def _to_template(row) -> ResolvedTemplate:
    return ResolvedTemplate(
        id=row[0],
        slug=row[1],
        name=row[2],
        description=row[3],
        prompt=row[4],
        credit_cost=row[5],
    )


async def resolve_template(db: AsyncSession, template_id: str | None) -> ResolvedTemplate:
    """Look up an active template by id, or the default slug when no id is given.

    Raises TemplateNotFound for unknown, inactive, or malformed ids.
    """
    if template_id:
        try:
            parsed_id = uuid.UUID(str(template_id))
        except ValueError:
            raise TemplateNotFound()
        result = await db.execute(
            text(
                f"SELECT {_TEMPLATE_COLUMNS} FROM templates "
                "WHERE id = :template_id AND is_active = true"
            ),
            {"template_id": parsed_id},
        )
    else:
        result = await db.execute(
            text(
                f"SELECT {_TEMPLATE_COLUMNS} FROM templates "
                "WHERE slug = :slug AND is_active = true"
            ),
            {"slug": settings.DEFAULT_TEMPLATE_SLUG},
        )

    row = result.fetchone()
    if row is None:
        raise TemplateNotFound()
    return _to_template(row)


async def check_entitlement(
    db: AsyncSession,
    ctx: RequestContext,
    template_id: str | None = None,
) -> Entitlement:
    """Resolve the template and verify the caller's balance covers its cost.

    Raises InsufficientCredits(required, available) without mutating anything.
    """
    template = await resolve_template(db, template_id)
    balance = await get_balance(db, ctx.user_id)
    if balance < template.credit_cost:
        raise InsufficientCredits(required=template.credit_cost, available=balance)
    return Entitlement(template=template, balance=balance)


async def list_active_templates(db: AsyncSession) -> list[TemplateResponse]:
    """Return all selectable templates, cheapest first."""
    result = await db.execute(
        text(
            "SELECT id, slug, name, description, credit_cost FROM templates "
            "WHERE is_active = true ORDER BY credit_cost, name"
        )
    )
    return [
        TemplateResponse(
            id=row[0], slug=row[1], name=row[2], description=row[3], credit_cost=row[4],
        )
        for row in result.fetchall()
    ]
