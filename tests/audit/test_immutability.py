"""
Append-only persistence tests.

Verifies:
- Payment trail, audit log, allocation records, funding movements and credit
  movements reject ORM UPDATE and DELETE.
- The guards are what stops the write: with them removed the same update
  reaches the database.
"""

from contextlib import contextmanager

import pytest
from sqlalchemy import select

from settlement_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from settlement_kernel.domain.funding import FundingSourceKind
from settlement_kernel.exceptions import AppendOnlyViolationError
from settlement_kernel.models import (
    AllocationRecordModel,
    CreditMovementModel,
    DocumentAuditModel,
    DocumentPaymentModel,
    FundingMovementModel,
)


@contextmanager
def disabled_immutability():
    """Remove the append-only guards for the duration of the block."""
    unregister_immutability_listeners()
    try:
        yield
    finally:
        register_immutability_listeners()


@pytest.fixture
def settled(make, service):
    """One overpaid bill: every append-only table has at least one row."""
    cash = make.source(FundingSourceKind.CASH, "5000.00")
    bill = make.bill("1000.00")
    service.record_payment(bill.id, make.request(cash, "1200.00")).unwrap()
    return bill


PROTECTED = [
    (DocumentPaymentModel, "reference", "tampered"),
    (DocumentAuditModel, "actor", "mallory"),
    (AllocationRecordModel, "applied_amount_minor", 1),
    (FundingMovementModel, "amount_minor", 1),
    (CreditMovementModel, "amount_minor", 1),
]


class TestAppendOnly:
    """UPDATE and DELETE are refused before SQL reaches the database."""

    @pytest.mark.parametrize("model,attribute,value", PROTECTED)
    def test_update_refused(self, session, settled, model, attribute, value):
        row = session.execute(select(model)).scalars().first()
        setattr(row, attribute, value)
        with pytest.raises(AppendOnlyViolationError) as exc_info:
            session.flush()
        assert exc_info.value.operation == "update"
        session.rollback()

    @pytest.mark.parametrize("model", [entry[0] for entry in PROTECTED])
    def test_delete_refused(self, session, settled, model):
        row = session.execute(select(model)).scalars().first()
        session.delete(row)
        with pytest.raises(AppendOnlyViolationError) as exc_info:
            session.flush()
        assert exc_info.value.operation == "delete"
        session.rollback()

    def test_violation_logged(self, session, settled, captured_logs):
        row = session.execute(select(DocumentAuditModel)).scalars().first()
        row.actor = "mallory"
        with pytest.raises(AppendOnlyViolationError):
            session.flush()
        session.rollback()

        violation = next(r for r in captured_logs() if r["message"] == "append_only_violation")
        assert violation["entity_type"] == "DocumentAuditModel"
        assert violation["level"] == "ERROR"

    def test_guards_are_what_stop_the_write(self, session, settled):
        row = session.execute(select(DocumentAuditModel)).scalars().first()
        with disabled_immutability():
            row.actor = "mallory"
            session.flush()
        session.rollback()

        row = session.execute(select(DocumentAuditModel)).scalars().first()
        row.actor = "mallory"
        with pytest.raises(AppendOnlyViolationError):
            session.flush()
        session.rollback()
