"""Profile and credit ledger models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timehug.models.base import Base

if TYPE_CHECKING:
    from timehug.models.generation import Generation


class Profile(Base):
    """Per-account data; ``id`` is the identity provider's user id."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    username: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    credit_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_profile_balance_nonneg"),
    )

    credit_transactions: Mapped[list[CreditTransaction]] = relationship(
        back_populates="profile", lazy="selectin"
    )
    generations: Mapped[list[Generation]] = relationship(
        back_populates="profile", lazy="selectin"
    )


class CreditTransaction(Base):
    """Append-only audit row; UPDATE/DELETE are rejected by a trigger."""

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("profiles.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    generation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("generations.id"), nullable=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "type IN ('generation', 'refund', 'purchase', 'bonus', 'admin_adjustment')",
            name="ck_credit_txn_type",
        ),
        Index(
            "uq_credit_txn_generation_type",
            "generation_id",
            "type",
            unique=True,
            postgresql_where=text("generation_id IS NOT NULL"),
        ),
    )

    profile: Mapped[Profile] = relationship(back_populates="credit_transactions")
    generation: Mapped[Optional[Generation]] = relationship(
        back_populates="credit_transactions"
    )
