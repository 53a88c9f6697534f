"""
Module: settlement_kernel.models.credit_ledger
Responsibility: ORM persistence for per-counterparty unapplied credit and its
    append-only movement history.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - available_credit_minor >= 0 (CHECK constraint, and every decrement is a
      conditional UPDATE guarded by the current balance).
    - One balance row per counterparty (unique constraint).
    - CreditMovement rows are append-only.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, TrackedBase, UUIDString


class CreditBalanceModel(TrackedBase):
    """Current unapplied credit for one counterparty."""

    __tablename__ = "credit_balances"

    __table_args__ = (
        UniqueConstraint("counterparty_id", name="uq_credit_balance_counterparty"),
        CheckConstraint(
            "available_credit_minor >= 0",
            name="ck_credit_balance_non_negative",
        ),
    )

    counterparty_id: Mapped[str] = mapped_column(String(100), nullable=False)
    available_credit_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    version: Mapped[int] = mapped_column(nullable=False, default=1)


class CreditMovementModel(Base):
    """One credit or consume movement; ``balance_after_minor`` is the running balance."""

    __tablename__ = "credit_movements"

    __table_args__ = (
        UniqueConstraint("counterparty_id", "sequence", name="uq_credit_movement_sequence"),
    )

    counterparty_id: Mapped[str] = mapped_column(String(100), nullable=False)
    sequence: Mapped[int] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    amount_minor: Mapped[int] = mapped_column(nullable=False)
    balance_after_minor: Mapped[int] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    document_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
