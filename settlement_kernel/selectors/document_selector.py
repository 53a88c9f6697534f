"""
Module: settlement_kernel.selectors.document_selector
Responsibility: Reporting reads over persisted documents: open and overdue
    lists, the aging report, the settlement summary, outstanding totals per
    counterparty, and the payment, audit and allocation trails.
Architecture position: Kernel > Selectors.  Shares the row-to-snapshot
    conversion with the repository; aging and summaries come from
    ``settlement_engines.aging``.

Invariants enforced:
    - Only approved, undeleted documents are reported as open; drafts,
      rejected and cancelled documents never appear in aging.
    - Returned documents carry ``payment_status`` derived at the report's
      "now" when one is given, otherwise at the injected clock's time.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engines.aging import (
    AgingItem,
    AgingReport,
    AgingReportBuilder,
    SettlementSummary,
    classify,
    summarize,
)
from settlement_engines.allocation import AllocationRecord
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.documents import (
    ApprovalStatus,
    AuditEntry,
    DocumentKind,
    FinancialDocument,
    PaymentEntry,
    PaymentSource,
)
from settlement_kernel.domain.values import Money
from settlement_kernel.models.document import AllocationRecordModel, FinancialDocumentModel
from settlement_kernel.selectors.base import BaseSelector
from settlement_kernel.services.repository import document_to_domain


class DocumentSelector(BaseSelector):
    """Read-only document queries and reports."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def _query(
        self,
        kind: DocumentKind | None = None,
        counterparty_id: str | None = None,
        approval_status: ApprovalStatus | None = None,
        now: date | datetime | None = None,
    ) -> list[FinancialDocument]:
        stmt = (
            select(FinancialDocumentModel)
            .where(FinancialDocumentModel.is_deleted.is_(False))
            .order_by(FinancialDocumentModel.issue_date, FinancialDocumentModel.document_number)
            .execution_options(populate_existing=True)
        )
        if kind is not None:
            stmt = stmt.where(FinancialDocumentModel.kind == kind.value)
        if counterparty_id is not None:
            stmt = stmt.where(FinancialDocumentModel.counterparty_id == counterparty_id)
        if approval_status is not None:
            stmt = stmt.where(FinancialDocumentModel.approval_status == approval_status.value)
        rows = self.session.execute(stmt).scalars().all()
        at = now if now is not None else self._clock.now()
        return [document_to_domain(row).as_of(at) for row in rows]

    def documents(
        self,
        kind: DocumentKind | None = None,
        counterparty_id: str | None = None,
        approval_status: ApprovalStatus | None = None,
    ) -> list[FinancialDocument]:
        """Undeleted documents, oldest first."""
        return self._query(kind, counterparty_id, approval_status)

    def get(self, document_id: UUID) -> FinancialDocument | None:
        row = self.session.get(FinancialDocumentModel, document_id, populate_existing=True)
        if row is None:
            return None
        return document_to_domain(row).as_of(self._clock.now())

    def open_documents(
        self,
        kind: DocumentKind,
        counterparty_id: str | None = None,
        now: date | datetime | None = None,
    ) -> list[FinancialDocument]:
        """Approved documents with something outstanding."""
        return [
            d for d in self._query(kind, counterparty_id, ApprovalStatus.APPROVED, now)
            if d.outstanding_amount.is_positive
        ]

    def overdue_documents(
        self,
        kind: DocumentKind,
        now: date | datetime,
        counterparty_id: str | None = None,
    ) -> list[FinancialDocument]:
        """Open documents past their due date, most overdue first."""
        overdue = [
            d for d in self.open_documents(kind, counterparty_id, now)
            if classify(d.due_date, now).is_overdue
        ]
        return sorted(overdue, key=lambda d: (d.due_date, d.document_number))

    def aging_report(
        self,
        kind: DocumentKind,
        now: date | datetime,
        counterparty_id: str | None = None,
    ) -> AgingReport:
        items = [AgingItem.from_document(d) for d in self.open_documents(kind, counterparty_id, now)]
        return AgingReportBuilder().build(items, now)

    def summary(
        self,
        kind: DocumentKind,
        now: date | datetime,
        counterparty_id: str | None = None,
    ) -> SettlementSummary:
        """Totals over approved documents (cancelled ones excluded)."""
        return summarize(self._query(kind, counterparty_id, ApprovalStatus.APPROVED, now), now)

    def outstanding_by_counterparty(self, kind: DocumentKind) -> dict[str, Money]:
        totals: dict[str, Money] = {}
        for document in self.open_documents(kind):
            totals[document.counterparty_id] = (
                totals.get(document.counterparty_id, Money.zero()) + document.outstanding_amount
            )
        return dict(sorted(totals.items()))

    def payment_history(
        self,
        document_id: UUID,
        source: PaymentSource | None = None,
    ) -> tuple[PaymentEntry, ...]:
        document = self.get(document_id)
        if document is None:
            return ()
        return tuple(p for p in document.payments if source is None or p.source is source)

    def audit_trail(self, document_id: UUID) -> tuple[AuditEntry, ...]:
        document = self.get(document_id)
        return document.audit_log if document is not None else ()

    def allocation_records(self, settlement_id: UUID) -> tuple[AllocationRecord, ...]:
        rows = self.session.execute(
            select(AllocationRecordModel)
            .where(AllocationRecordModel.settlement_id == settlement_id)
            .order_by(AllocationRecordModel.sequence)
        ).scalars().all()
        return tuple(
            AllocationRecord(
                document_id=row.document_id,
                applied_amount=Money.from_minor_units(row.applied_amount_minor),
                source=PaymentSource(row.source),
            )
            for row in rows
        )
