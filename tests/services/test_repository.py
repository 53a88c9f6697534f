"""
Tests for the DocumentRepository persistence boundary.

Covers:
- Round trip of a document with lines, taxes and trails
- Optimistic locking on stale snapshots
- Append-only enforcement of payment and audit trails
- Line synchronization on edit
- Funding source create / update rules
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from settlement_kernel.domain.documents import (
    AuditAction,
    Bill,
    LineItem,
    PaymentEntry,
    PaymentMethod,
    TaxComponent,
)
from settlement_kernel.domain.funding import FundingSource, FundingSourceKind
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import AppendOnlyViolationError, ConcurrencyConflictError
from settlement_kernel.models.document import DocumentLineModel, DocumentPaymentModel
from settlement_kernel.services.repository import DocumentRepository


class TestDocumentRoundTrip:
    """add / load / save."""

    @pytest.fixture(autouse=True)
    def _setup(self, session, deterministic_clock):
        self.session = session
        self.repo = DocumentRepository(session)
        self.now = deterministic_clock.now()
        self.bill = Bill(
            id=uuid4(),
            document_number="BILL-20240101-001",
            counterparty_id="SUP-001",
            issue_date=date(2024, 1, 1),
            due_date=date(2024, 1, 31),
            line_items=(
                LineItem(
                    description="Cement",
                    quantity=Decimal("2.5"),
                    unit_rate=Money.of("400.00"),
                    tax_components=(TaxComponent.for_rate("vat", Decimal("5"), Money.of("1000.00")),),
                ),
            ),
            subtotal=Money.of("1000.00"),
            tax_amount=Money.of("50.00"),
            total_amount=Money.of("1050.00"),
        ).with_audit(AuditAction.CREATED, "clerk", self.now, total_amount="1050.00")

    def test_round_trip(self):
        stored = self.repo.add(self.bill, "clerk")
        self.session.commit()
        loaded = self.repo.load(self.bill.id)

        assert loaded.version == stored.version
        assert loaded.total_amount == Money.of("1050.00")
        assert loaded.line_items == self.bill.line_items
        assert loaded.audit_log[0].action is AuditAction.CREATED
        assert loaded.audit_log[0].details == {"total_amount": "1050.00"}
        assert loaded.audit_log[0].timestamp == self.now

    def test_unknown_id(self):
        assert self.repo.load(uuid4()) is None

    def test_save_appends_payment_and_bumps_version(self):
        stored = self.repo.add(self.bill, "clerk")
        paid = stored.with_payment(PaymentEntry(Money.of("50.00"), PaymentMethod.CASH, self.now), self.now)
        saved = self.repo.save(paid, "clerk")
        self.session.commit()

        assert saved.version == stored.version + 1
        loaded = self.repo.load(self.bill.id)
        assert loaded.paid_amount == Money.of("50.00")
        assert loaded.is_locked
        assert len(loaded.payments) == 1

    def test_stale_snapshot_conflicts(self):
        stored = self.repo.add(self.bill, "clerk")
        self.repo.save(stored.with_audit(AuditAction.SUBMITTED, "clerk", self.now), "clerk")

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            self.repo.save(stored.with_audit(AuditAction.APPROVED, "manager", self.now), "manager")
        assert exc_info.value.expected_version == stored.version
        assert exc_info.value.actual_version == stored.version + 1

    def test_truncated_trail_refused(self):
        stored = self.repo.add(self.bill, "clerk")
        with pytest.raises(AppendOnlyViolationError):
            self.repo.save(replace(stored, audit_log=()), "clerk")

    def test_payment_rows_are_immutable(self):
        stored = self.repo.add(self.bill, "clerk")
        self.repo.save(
            stored.with_payment(PaymentEntry(Money.of("50.00"), PaymentMethod.CASH, self.now), self.now),
            "clerk",
        )
        self.session.commit()
        row = self.session.execute(select(DocumentPaymentModel)).scalars().first()
        row.amount_minor = 1
        with pytest.raises(AppendOnlyViolationError):
            self.session.flush()
        self.session.rollback()

    def test_lines_synchronized(self):
        stored = self.repo.add(self.bill, "clerk")
        lines = (
            LineItem(description="Sand", quantity=Decimal("1"), unit_rate=Money.of("10.00")),
            LineItem(description="Gravel", quantity=Decimal("3"), unit_rate=Money.of("5.00")),
        )
        saved = self.repo.save(replace(stored, line_items=lines), "clerk")
        saved = self.repo.save(replace(saved, line_items=lines[1:]), "clerk")
        self.session.commit()

        assert [line.description for line in self.repo.load(self.bill.id).line_items] == ["Gravel"]
        rows = self.session.execute(
            select(DocumentLineModel).where(DocumentLineModel.document_id == self.bill.id)
        ).scalars().all()
        assert len(rows) == 1


class TestFundingSourcePersistence:
    """save_funding_source / load_funding_source."""

    @pytest.fixture(autouse=True)
    def _setup(self, session):
        self.session = session
        self.repo = DocumentRepository(session)

    def test_create_and_load(self):
        source = FundingSource(uuid4(), FundingSourceKind.CASH, "Cash Drawer", Money.of("5000.00"))
        self.repo.save_funding_source(source, "owner")
        loaded = self.repo.load_funding_source(source.id)
        assert loaded.available_balance == Money.of("5000.00")
        assert loaded.version == 1

    def test_update_never_writes_balance(self):
        source = self.repo.save_funding_source(
            FundingSource(uuid4(), FundingSourceKind.BANK_ACCOUNT, "Bank", Money.of("100.00")), "owner",
        )
        updated = self.repo.save_funding_source(
            replace(source, label="Main Bank", available_balance=Money.of("999999.00"), is_active=False),
            "owner",
        )
        assert updated.label == "Main Bank"
        assert not updated.is_active
        assert updated.available_balance == Money.of("100.00")
        assert updated.version == 2

    def test_stale_update_conflicts(self):
        source = self.repo.save_funding_source(
            FundingSource(uuid4(), FundingSourceKind.CASH, "Cash", Money.zero()), "owner",
        )
        self.repo.save_funding_source(replace(source, label="Till"), "owner")
        with pytest.raises(ConcurrencyConflictError):
            self.repo.save_funding_source(replace(source, label="Drawer"), "owner")

    def test_owner_funds_have_no_balance(self):
        source = self.repo.save_funding_source(
            FundingSource(uuid4(), FundingSourceKind.OWNER_PERSONAL_FUNDS, "Owner"), "owner",
        )
        assert source.available_balance is None
        assert source.is_unlimited
