"""Async engine, session factory, and bounded store calls."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from timehug.config import settings
from timehug.exceptions import Timeout

T = TypeVar("T")

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args={"command_timeout": settings.STORE_TIMEOUT_SECONDS},
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield a session per request; roll back anything left uncommitted."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def bounded(awaitable: Awaitable[T], timeout: float | None = None) -> T:
    """Await a store call, raising Timeout once STORE_TIMEOUT_SECONDS elapse."""
    limit = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(awaitable, timeout=limit)
    except asyncio.TimeoutError as exc:
        raise Timeout(f"Store call exceeded {limit}s") from exc
