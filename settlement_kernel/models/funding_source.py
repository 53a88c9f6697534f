"""
Module: settlement_kernel.models.funding_source
Responsibility: ORM persistence for funding sources (cash drawers, bank
    accounts, owner personal funds) and the append-only log of balance
    movements made against them.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - available_balance_minor >= 0 (CHECK constraint).  Balances change only
      through the Balance Guard's conditional UPDATE statements.
    - Owner personal funds have a NULL balance (unlimited, untracked).
    - FundingMovement rows are append-only (see db/immutability.py).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, TrackedBase, UUIDString


class FundingSourceModel(TrackedBase):
    """A place money is drawn from or deposited to."""

    __tablename__ = "funding_sources"

    __table_args__ = (
        CheckConstraint(
            "available_balance_minor IS NULL OR available_balance_minor >= 0",
            name="ck_funding_source_balance_non_negative",
        ),
    )

    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)

    # Integer cents; NULL for owner_personal_funds
    available_balance_minor: Mapped[int | None] = mapped_column(nullable=True)

    # Bumped by every balance mutation
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<FundingSource {self.label} ({self.kind}) {self.available_balance_minor}>"


class FundingMovementModel(Base):
    """One balance mutation made by the Balance Guard (out / in / release)."""

    __tablename__ = "funding_movements"

    __table_args__ = (
        Index("idx_funding_movement_source", "funding_source_id"),
        Index("idx_funding_movement_token", "token_id"),
    )

    funding_source_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("funding_sources.id"),
        nullable=False,
    )
    token_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    amount_minor: Mapped[int] = mapped_column(nullable=False)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
