"""
DocumentRepository -- persistence boundary for documents and funding sources.

Responsibility:
    Converts between frozen domain snapshots (``FinancialDocument``,
    ``FundingSource``) and their ORM rows.  ``load``/``save`` and
    ``load_funding_source``/``save_funding_source`` are the persistence
    interface the settlement service is written against.

Architecture position:
    Kernel > Services -- imperative shell.  Flushes only; the caller owns
    the transaction.

Invariants enforced:
    - Optimistic locking: ``save`` compares the snapshot's ``version`` with
      the row's before writing, and the row's ``version_id_col`` makes the
      UPDATE itself conditional.  Either mismatch raises
      ``ConcurrencyConflictError``.
    - Payment and audit trails are append-only: ``save`` inserts entries
      beyond the stored prefix and refuses snapshots whose trail is shorter
      than the stored one.
    - Funding balances are written only at creation; afterwards only the
      Balance Guard changes them.

Failure modes:
    - ConcurrencyConflictError on version mismatch.
    - AppendOnlyViolationError when a snapshot would drop trail entries.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from settlement_kernel.domain.documents import (
    ApprovalStatus,
    AuditAction,
    AuditEntry,
    DocumentKind,
    FinancialDocument,
    LineItem,
    PaymentEntry,
    PaymentMethod,
    PaymentSource,
    PaymentStatus,
    TaxComponent,
    document_class,
)
from settlement_kernel.domain.funding import FundingSource, FundingSourceKind
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import AppendOnlyViolationError, ConcurrencyConflictError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.document import (
    AllocationRecordModel,
    DocumentAuditModel,
    DocumentLineModel,
    DocumentPaymentModel,
    FinancialDocumentModel,
)
from settlement_kernel.models.funding_source import FundingSourceModel
from settlement_kernel.services.base import BaseService

logger = get_logger("services.repository")


# -----------------------------------------------------------------------------
# Row <-> snapshot conversion
# -----------------------------------------------------------------------------


def _money(cents: int | None) -> Money:
    return Money.from_minor_units(cents or 0)


def _line_to_domain(row: DocumentLineModel) -> LineItem:
    return LineItem(
        description=row.description,
        quantity=Decimal(row.quantity).normalize() if row.quantity is not None else Decimal("0"),
        unit_rate=_money(row.unit_rate_minor),
        discount=_money(row.discount_minor),
        tax_components=tuple(
            TaxComponent(
                kind=tax["kind"],
                rate=Decimal(tax["rate"]),
                amount=_money(tax["amount_minor"]),
            )
            for tax in row.tax_components or ()
        ),
    )


def _write_line(row: DocumentLineModel, line: LineItem) -> None:
    row.description = line.description
    row.quantity = line.quantity
    row.unit_rate_minor = line.unit_rate.minor_units
    row.discount_minor = line.discount.minor_units
    row.tax_components = [
        {"kind": t.kind, "rate": str(t.rate), "amount_minor": t.amount.minor_units}
        for t in line.tax_components
    ]


def _payment_to_domain(row: DocumentPaymentModel) -> PaymentEntry:
    return PaymentEntry(
        amount=_money(row.amount_minor),
        method=PaymentMethod(row.method),
        recorded_at=row.recorded_at,
        source=PaymentSource(row.source),
        funding_source_id=row.funding_source_id,
        reference=row.reference,
        settlement_id=row.settlement_id,
    )


def _payment_row(document_id: UUID, sequence: int, entry: PaymentEntry) -> DocumentPaymentModel:
    return DocumentPaymentModel(
        document_id=document_id,
        sequence=sequence,
        amount_minor=entry.amount.minor_units,
        method=entry.method.value,
        source=entry.source.value,
        funding_source_id=entry.funding_source_id,
        reference=entry.reference,
        settlement_id=entry.settlement_id,
        recorded_at=entry.recorded_at,
    )


def _audit_to_domain(row: DocumentAuditModel) -> AuditEntry:
    return AuditEntry(
        action=AuditAction(row.action),
        actor=row.actor,
        timestamp=row.timestamp,
        details=dict(row.details or {}),
    )


def _json_safe(value):
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return str(value)


def _audit_row(document_id: UUID, sequence: int, entry: AuditEntry) -> DocumentAuditModel:
    return DocumentAuditModel(
        document_id=document_id,
        sequence=sequence,
        action=entry.action.value,
        actor=entry.actor,
        details=_json_safe(dict(entry.details)),
        timestamp=entry.timestamp,
    )


def document_to_domain(row: FinancialDocumentModel) -> FinancialDocument:
    """
    Build a frozen snapshot from an ORM row.

    ``payment_status`` is the value derived at the last write; readers that
    report status call ``FinancialDocument.as_of`` with their clock.
    """
    cls = document_class(row.kind)
    return cls(
        id=row.id,
        document_number=row.document_number,
        counterparty_id=row.counterparty_id,
        issue_date=row.issue_date,
        due_date=row.due_date,
        line_items=tuple(_line_to_domain(line) for line in row.lines),
        subtotal=_money(row.subtotal_minor),
        tax_amount=_money(row.tax_amount_minor),
        line_discounts=_money(row.line_discounts_minor),
        document_discount=_money(row.document_discount_minor),
        total_amount=_money(row.total_amount_minor),
        paid_amount=_money(row.paid_amount_minor),
        credit_applied=_money(row.credit_applied_minor),
        payment_status=PaymentStatus(row.payment_status),
        approval_status=ApprovalStatus(row.approval_status),
        is_locked=row.is_locked,
        is_deleted=row.is_deleted,
        payments=tuple(_payment_to_domain(p) for p in row.payments),
        audit_log=tuple(_audit_to_domain(a) for a in row.audit_entries),
        version=row.version,
        notes=row.notes,
        approved_by=row.approved_by,
        approved_at=row.approved_at,
        rejected_by=row.rejected_by,
        rejected_at=row.rejected_at,
        rejection_reason=row.rejection_reason,
        cancelled_by=row.cancelled_by,
        cancelled_at=row.cancelled_at,
        cancellation_reason=row.cancellation_reason,
        resubmitted_from=row.resubmitted_from,
    )


def _write_header(row: FinancialDocumentModel, document: FinancialDocument) -> None:
    row.kind = document.kind.value
    row.document_number = document.document_number
    row.counterparty_id = document.counterparty_id
    row.issue_date = document.issue_date
    row.due_date = document.due_date
    row.subtotal_minor = document.subtotal.minor_units
    row.tax_amount_minor = document.tax_amount.minor_units
    row.line_discounts_minor = document.line_discounts.minor_units
    row.document_discount_minor = document.document_discount.minor_units
    row.total_amount_minor = document.total_amount.minor_units
    row.paid_amount_minor = document.paid_amount.minor_units
    row.credit_applied_minor = document.credit_applied.minor_units
    row.payment_status = document.payment_status.value
    row.approval_status = document.approval_status.value
    row.is_locked = document.is_locked
    row.is_deleted = document.is_deleted
    row.notes = document.notes
    row.approved_by = document.approved_by
    row.approved_at = document.approved_at
    row.rejected_by = document.rejected_by
    row.rejected_at = document.rejected_at
    row.rejection_reason = document.rejection_reason
    row.cancelled_by = document.cancelled_by
    row.cancelled_at = document.cancelled_at
    row.cancellation_reason = document.cancellation_reason
    row.resubmitted_from = document.resubmitted_from


def funding_source_to_domain(row: FundingSourceModel) -> FundingSource:
    return FundingSource(
        id=row.id,
        kind=FundingSourceKind(row.kind),
        label=row.label,
        available_balance=(
            None if row.available_balance_minor is None
            else Money.from_minor_units(row.available_balance_minor)
        ),
        version=row.version,
        is_active=row.is_active,
    )


# -----------------------------------------------------------------------------
# Repository
# -----------------------------------------------------------------------------


class DocumentRepository(BaseService):
    """
    Load and save frozen snapshots.

    Contract:
        ``load`` returns ``None`` for unknown ids; ``save`` returns the
        snapshot with its new version.
    """

    def _document_row(self, document_id: UUID, for_update: bool = False) -> FinancialDocumentModel | None:
        row = self.session.get(
            FinancialDocumentModel,
            document_id,
            populate_existing=True,
            with_for_update=for_update and self.supports_row_locks,
        )
        if row is not None:
            self.session.expire(row, ["lines", "payments", "audit_entries"])
        return row

    def load(self, document_id: UUID, for_update: bool = False) -> FinancialDocument | None:
        """Snapshot of the document, or None.  ``for_update`` locks the row on PostgreSQL."""
        row = self._document_row(document_id, for_update=for_update)
        return document_to_domain(row) if row is not None else None

    def add(self, document: FinancialDocument, actor: str) -> FinancialDocument:
        """Insert a new document with its lines and trails."""
        row = FinancialDocumentModel(id=document.id, created_by=actor)
        _write_header(row, document)
        for number, line in enumerate(document.line_items, start=1):
            line_row = DocumentLineModel(document_id=document.id, line_number=number)
            _write_line(line_row, line)
            row.lines.append(line_row)
        self.session.add(row)
        self.session.flush()
        self._append_trails(row, document, stored_payments=0, stored_audit=0)
        self.session.flush()
        self.session.expire(row, ["payments", "audit_entries"])
        logger.debug("document_added", extra={
            "document_id": str(document.id),
            "document_number": document.document_number,
            "document_kind": document.kind.value,
        })
        return replace(document, version=row.version)

    def _append_trails(
        self,
        row: FinancialDocumentModel,
        document: FinancialDocument,
        stored_payments: int,
        stored_audit: int,
    ) -> None:
        for sequence, entry in enumerate(document.payments[stored_payments:], start=stored_payments + 1):
            self.session.add(_payment_row(row.id, sequence, entry))
        for sequence, entry in enumerate(document.audit_log[stored_audit:], start=stored_audit + 1):
            self.session.add(_audit_row(row.id, sequence, entry))

    def _sync_lines(self, row: FinancialDocumentModel, lines: Sequence[LineItem]) -> None:
        # Rows are rewritten in place so line numbers never collide within a flush.
        existing = list(row.lines)
        for index, line in enumerate(lines):
            if index < len(existing):
                _write_line(existing[index], line)
            else:
                line_row = DocumentLineModel(document_id=row.id, line_number=index + 1)
                _write_line(line_row, line)
                row.lines.append(line_row)
        for extra in existing[len(lines):]:
            row.lines.remove(extra)

    def save(self, document: FinancialDocument, actor: str) -> FinancialDocument:
        """Write the snapshot over the stored row; returns it with the new version."""
        row = self.session.get(FinancialDocumentModel, document.id)
        if row is None:
            return self.add(document, actor)

        if row.version != document.version:
            logger.warning("document_version_conflict", extra={
                "document_id": str(document.id),
                "expected_version": document.version,
                "actual_version": row.version,
            })
            raise ConcurrencyConflictError(
                "FinancialDocument", document.id,
                expected_version=document.version, actual_version=row.version,
            )

        stored_payments = len(row.payments)
        stored_audit = len(row.audit_entries)
        if len(document.payments) < stored_payments:
            raise AppendOnlyViolationError("FinancialDocument.payments", document.id, "truncate")
        if len(document.audit_log) < stored_audit:
            raise AppendOnlyViolationError("FinancialDocument.audit_log", document.id, "truncate")

        _write_header(row, document)
        row.updated_by = actor
        # Trail-only saves still take a new version.
        flag_modified(row, "updated_by")
        if not document.is_locked:
            self._sync_lines(row, document.line_items)
        self._append_trails(row, document, stored_payments, stored_audit)

        try:
            self.session.flush()
        except StaleDataError as e:
            raise ConcurrencyConflictError(
                "FinancialDocument", document.id, expected_version=document.version,
            ) from e
        self.session.expire(row, ["payments", "audit_entries"])

        return replace(document, version=row.version)

    def counterparty_of(self, document_id: UUID) -> str | None:
        """Counterparty of a document without loading it; used to pick lock keys."""
        return self.session.execute(
            select(FinancialDocumentModel.counterparty_id)
            .where(FinancialDocumentModel.id == document_id)
        ).scalar_one_or_none()

    def open_documents_for(self, counterparty_id: str, kind: DocumentKind) -> list[FinancialDocument]:
        """Approved, undeleted documents with something outstanding, oldest first."""
        rows = self.session.execute(
            select(FinancialDocumentModel)
            .where(
                FinancialDocumentModel.counterparty_id == counterparty_id,
                FinancialDocumentModel.kind == kind.value,
                FinancialDocumentModel.approval_status == ApprovalStatus.APPROVED.value,
                FinancialDocumentModel.is_deleted.is_(False),
                FinancialDocumentModel.total_amount_minor
                - FinancialDocumentModel.paid_amount_minor
                - FinancialDocumentModel.credit_applied_minor > 0,
            )
            .order_by(FinancialDocumentModel.issue_date, FinancialDocumentModel.document_number)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [document_to_domain(row) for row in rows]

    def list_documents(
        self,
        kind: DocumentKind | None = None,
        counterparty_id: str | None = None,
        include_deleted: bool = False,
    ) -> list[FinancialDocument]:
        stmt = select(FinancialDocumentModel).execution_options(populate_existing=True)
        if kind is not None:
            stmt = stmt.where(FinancialDocumentModel.kind == kind.value)
        if counterparty_id is not None:
            stmt = stmt.where(FinancialDocumentModel.counterparty_id == counterparty_id)
        if not include_deleted:
            stmt = stmt.where(FinancialDocumentModel.is_deleted.is_(False))
        stmt = stmt.order_by(FinancialDocumentModel.issue_date, FinancialDocumentModel.document_number)
        return [document_to_domain(row) for row in self.session.execute(stmt).scalars().all()]

    # -------------------------------------------------------------------------
    # Allocation records
    # -------------------------------------------------------------------------

    def add_allocation_records(
        self,
        settlement_id: UUID,
        records: Sequence,
        created_at: datetime,
    ) -> None:
        next_sequence = self.session.execute(
            select(func.count(AllocationRecordModel.id))
            .where(AllocationRecordModel.settlement_id == settlement_id)
        ).scalar_one()
        for offset, record in enumerate(records):
            self.session.add(AllocationRecordModel(
                settlement_id=settlement_id,
                sequence=next_sequence + offset,
                document_id=record.document_id,
                applied_amount_minor=record.applied_amount.minor_units,
                source=record.source.value,
                created_at=created_at,
            ))
        self.session.flush()

    def allocation_rows(self, settlement_id: UUID) -> list[AllocationRecordModel]:
        return list(self.session.execute(
            select(AllocationRecordModel)
            .where(AllocationRecordModel.settlement_id == settlement_id)
            .order_by(AllocationRecordModel.sequence)
        ).scalars().all())

    # -------------------------------------------------------------------------
    # Funding sources
    # -------------------------------------------------------------------------

    def load_funding_source(self, funding_source_id: UUID) -> FundingSource | None:
        row = self.session.get(FundingSourceModel, funding_source_id, populate_existing=True)
        return funding_source_to_domain(row) if row is not None else None

    def save_funding_source(self, source: FundingSource, actor: str) -> FundingSource:
        """
        Create a source with its opening balance, or update label/active flag.

        The balance of an existing source is never written here.
        """
        row = self.session.get(FundingSourceModel, source.id, populate_existing=True)
        if row is None:
            row = FundingSourceModel(
                id=source.id,
                kind=source.kind.value,
                label=source.label,
                available_balance_minor=(
                    None if source.available_balance is None
                    else source.available_balance.minor_units
                ),
                version=1,
                is_active=source.is_active,
                created_by=actor,
            )
            self.session.add(row)
            self.session.flush()
            logger.info("funding_source_created", extra={
                "funding_source_id": str(source.id),
                "funding_source_kind": source.kind.value,
                "opening_balance": str(source.available_balance) if source.available_balance else None,
            })
            return funding_source_to_domain(row)

        if row.version != source.version:
            raise ConcurrencyConflictError(
                "FundingSource", source.id,
                expected_version=source.version, actual_version=row.version,
            )
        row.label = source.label
        row.is_active = source.is_active
        row.updated_by = actor
        row.version = row.version + 1
        self.session.flush()
        return funding_source_to_domain(row)
