"""Structured JSON audit logger for ledger and generation events.

Emits structured log entries via structlog for credit movements and
generation state changes.  Every entry carries an ``audit: true`` flag so
production log pipelines can filter on it easily.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog


log = structlog.get_logger()


class AuditLogger:
    """Structured audit logger for ledger events.

    All methods are synchronous -- they only emit log lines and perform
    no I/O beyond writing to the configured structlog sink.
    """

    # ------------------------------------------------------------------
    # Credit event
    # ------------------------------------------------------------------

    def log_credit_event(
        self,
        user_id,
        amount,
        txn_type: str,
        generation_id=None,
    ) -> None:
        """Log a credit transaction (generation charge, refund, etc.)."""
        log.info(
            "audit_event",
            event_type="credit_event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            amount=amount,
            txn_type=txn_type,
            generation_id=str(generation_id) if generation_id else None,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Generation transition
    # ------------------------------------------------------------------

    def log_generation_transition(
        self,
        generation_id,
        user_id,
        from_status: str | None,
        to_status: str,
        detail: str | None = None,
    ) -> None:
        """Record a generation entering a new status."""
        log.info(
            "audit_event",
            event_type="generation_transition",
            timestamp=datetime.now(timezone.utc).isoformat(),
            generation_id=str(generation_id),
            user_id=str(user_id) if user_id else None,
            from_status=from_status,
            to_status=to_status,
            detail=detail,
            audit=True,
        )
