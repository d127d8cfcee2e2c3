#!/usr/bin/env python3
"""Fail generations stuck in ``processing`` and refund their charges.

A generation stays in ``processing`` when the generation service never
called back, or when the process died between charging and completing.
Anything older than ``STALE_GENERATION_MINUTES`` is failed with
"Generation timed out"; generations that were charged get a refund row.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/fail_stale_generations.py

Exit codes:
    0 -- sweep finished (the JSON report lists what was failed)
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone

from timehug.config import settings
from timehug.database import async_session_factory, engine
from timehug.services.generation_state import fail_stale_generations


async def sweep(older_than: timedelta) -> list[dict]:
    async with async_session_factory() as db:
        transitions = await fail_stale_generations(db, older_than)
        await db.commit()
    return [
        {
            "generation_id": str(t.generation_id),
            "user_id": str(t.user_id) if t.user_id else None,
            "refunded": t.refunded,
        }
        for t in transitions
    ]


async def main() -> int:
    older_than = timedelta(minutes=settings.STALE_GENERATION_MINUTES)
    try:
        failed = await sweep(older_than)
    finally:
        await engine.dispose()

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "older_than_minutes": settings.STALE_GENERATION_MINUTES,
        "total_failed": len(failed),
        "failed": failed,
    }
    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
