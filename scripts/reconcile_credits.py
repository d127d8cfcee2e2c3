#!/usr/bin/env python3
"""Credit ledger reconciliation.

Reports three kinds of drift:

* ``balance`` -- a profile whose ``credit_balance`` differs from the sum of
  its ``credit_transactions``.
* ``missing_charge`` -- a generation past ``processing`` with
  ``credits_charged > 0`` and no ``generation`` ledger row.  Generations
  failed before their debit landed are expected to have neither.
* ``amount_mismatch`` -- a charge row whose amount is not
  ``-credits_charged``.

Usage:
    DATABASE_URL=postgresql://... python scripts/reconcile_credits.py

Exit codes:
    0 -- ledger is consistent
    1 -- one or more discrepancies found
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import asyncpg  # type: ignore[import-untyped]

DEFAULT_DATABASE_URL = "postgresql://app:devpassword@db:5432/timehug"

BALANCE_SQL = """
SELECT
    p.id AS user_id,
    p.credit_balance AS stored_balance,
    COALESCE(SUM(ct.amount), 0)::int AS computed_balance
FROM profiles p
LEFT JOIN credit_transactions ct ON ct.user_id = p.id
GROUP BY p.id, p.credit_balance
HAVING p.credit_balance <> COALESCE(SUM(ct.amount), 0)
ORDER BY p.id
"""

MISSING_CHARGE_SQL = """
SELECT g.id AS generation_id, g.user_id, g.status, g.credits_charged
FROM generations g
LEFT JOIN credit_transactions ct
       ON ct.generation_id = g.id AND ct.type = 'generation'
WHERE g.status = 'completed'
  AND g.credits_charged > 0
  AND ct.id IS NULL
ORDER BY g.created_at
"""

AMOUNT_MISMATCH_SQL = """
SELECT g.id AS generation_id, g.user_id, g.credits_charged, ct.amount
FROM generations g
JOIN credit_transactions ct
  ON ct.generation_id = g.id AND ct.type = 'generation'
WHERE ct.amount <> -g.credits_charged
ORDER BY g.created_at
"""


def _get_dsn() -> str:
    """Return a raw ``postgresql://`` DSN (strip any SQLAlchemy dialect prefix)."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


async def reconcile(dsn: str) -> list[dict]:
    """Run every check and return a flat list of discrepancy dicts."""
    conn: asyncpg.Connection = await asyncpg.connect(dsn)
    try:
        discrepancies: list[dict] = []

        for row in await conn.fetch(BALANCE_SQL):
            discrepancies.append({
                "kind": "balance",
                "user_id": str(row["user_id"]),
                "stored_balance": row["stored_balance"],
                "computed_balance": row["computed_balance"],
                "difference": row["stored_balance"] - row["computed_balance"],
            })

        for row in await conn.fetch(MISSING_CHARGE_SQL):
            discrepancies.append({
                "kind": "missing_charge",
                "generation_id": str(row["generation_id"]),
                "user_id": str(row["user_id"]),
                "credits_charged": row["credits_charged"],
            })

        for row in await conn.fetch(AMOUNT_MISMATCH_SQL):
            discrepancies.append({
                "kind": "amount_mismatch",
                "generation_id": str(row["generation_id"]),
                "user_id": str(row["user_id"]),
                "credits_charged": row["credits_charged"],
                "ledger_amount": row["amount"],
            })

        return discrepancies
    finally:
        await conn.close()


async def main() -> int:
    dsn = _get_dsn()
    discrepancies = await reconcile(dsn)

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_discrepancies": len(discrepancies),
        "discrepancies": discrepancies,
    }

    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if discrepancies else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
