"""
Module: settlement_kernel.models.document
Responsibility: ORM persistence for financial documents (bills, sales
    invoices, credit notes) with their lines, payment trail, audit log, and
    the allocation records produced by settlements.
Architecture position: Kernel > Models.  May import from db/base.py only.
    Domain snapshots are produced by ``services/repository.py``.

Invariants enforced:
    - document_number is unique.
    - Stored amounts are integer cents; outstanding (total - paid - credit)
      is never negative (CHECK constraint).
    - ``version`` is the optimistic-lock counter (``version_id_col``): every
      UPDATE is issued as ``... WHERE id = :id AND version = :expected``.
    - Payment, audit and allocation rows are append-only
      (see db/immutability.py).

Failure modes:
    - IntegrityError on duplicate document_number.
    - StaleDataError on version mismatch (translated to
      ConcurrencyConflictError by the repository).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_kernel.db.base import Base, TrackedBase, UUIDString


class FinancialDocumentModel(TrackedBase):
    """
    A payable or receivable document.

    Contract:
        Amount columns hold the totals computed from the lines; the payment
        status column holds the status derived at the last mutation.
    """

    __tablename__ = "financial_documents"

    __table_args__ = (
        UniqueConstraint("document_number", name="uq_document_number"),
        Index("idx_document_counterparty", "counterparty_id", "kind"),
        Index("idx_document_status", "approval_status", "payment_status"),
        CheckConstraint(
            "total_amount_minor - paid_amount_minor - credit_applied_minor >= 0",
            name="ck_document_outstanding_non_negative",
        ),
    )

    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    document_number: Mapped[str] = mapped_column(String(50), nullable=False)
    counterparty_id: Mapped[str] = mapped_column(String(100), nullable=False)
    issue_date: Mapped[date] = mapped_column(nullable=False)
    due_date: Mapped[date | None] = mapped_column(nullable=True)

    subtotal_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    tax_amount_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    line_discounts_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    document_discount_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    total_amount_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    paid_amount_minor: Mapped[int] = mapped_column(nullable=False, default=0)
    credit_applied_minor: Mapped[int] = mapped_column(nullable=False, default=0)

    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    approval_status: Mapped[str] = mapped_column(String(20), nullable=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resubmitted_from: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    lines: Mapped[list["DocumentLineModel"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentLineModel.line_number",
    )
    payments: Mapped[list["DocumentPaymentModel"]] = relationship(
        back_populates="document",
        order_by="DocumentPaymentModel.sequence",
    )
    audit_entries: Mapped[list["DocumentAuditModel"]] = relationship(
        back_populates="document",
        order_by="DocumentAuditModel.sequence",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<FinancialDocument {self.document_number} {self.approval_status}/{self.payment_status}>"


class DocumentLineModel(Base):
    """One line item; tax components are stored as a JSON list."""

    __tablename__ = "document_lines"

    __table_args__ = (
        UniqueConstraint("document_id", "line_number", name="uq_document_line_number"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("financial_documents.id"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    unit_rate_minor: Mapped[int] = mapped_column(nullable=False)
    discount_minor: Mapped[int] = mapped_column(nullable=False, default=0)

    # [{"kind": "cgst", "rate": "9", "amount_minor": 900}, ...]
    tax_components: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    document: Mapped[FinancialDocumentModel] = relationship(back_populates="lines")


class DocumentPaymentModel(Base):
    """One entry of a document's append-only payment trail."""

    __tablename__ = "document_payments"

    __table_args__ = (
        UniqueConstraint("document_id", "sequence", name="uq_document_payment_sequence"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("financial_documents.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    amount_minor: Mapped[int] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    funding_source_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    settlement_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    document: Mapped[FinancialDocumentModel] = relationship(back_populates="payments")


class DocumentAuditModel(Base):
    """One entry of a document's append-only audit log."""

    __tablename__ = "document_audit_log"

    __table_args__ = (
        UniqueConstraint("document_id", "sequence", name="uq_document_audit_sequence"),
    )

    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("financial_documents.id"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)

    document: Mapped[FinancialDocumentModel] = relationship(back_populates="audit_entries")


class AllocationRecordModel(Base):
    """Amount applied to one document by one settlement; immutable."""

    __tablename__ = "allocation_records"

    __table_args__ = (
        Index("idx_allocation_settlement", "settlement_id"),
        Index("idx_allocation_document", "document_id"),
        UniqueConstraint("settlement_id", "sequence", name="uq_allocation_settlement_sequence"),
    )

    settlement_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    sequence: Mapped[int] = mapped_column(nullable=False)
    document_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("financial_documents.id"),
        nullable=False,
    )
    applied_amount_minor: Mapped[int] = mapped_column(nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
