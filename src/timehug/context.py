"""Request-scoped identity handed explicitly to the core operations."""

from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class RequestContext:
    """Who is calling, resolved once per request from the session token."""

    user_id: uuid.UUID
    email: str | None = None
    role: str | None = None
