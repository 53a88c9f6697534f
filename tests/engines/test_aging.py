"""
Tests for the aging classifier, the aging report and the settlement summary.

Covers:
- Bucket boundaries (Not Due / Due Today / 1-30 / 31-60 / 60+)
- Date vs datetime comparison (midnight promotion, ceiling of partial days)
- Report grouping, ordering and totals
- Portfolio summary over documents
"""

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from settlement_engines.aging import (
    AgingBucket,
    AgingItem,
    AgingReportBuilder,
    BUCKET_ORDER,
    classify,
    summarize,
)
from settlement_kernel.domain.documents import (
    ApprovalStatus,
    Bill,
    PaymentEntry,
    PaymentMethod,
    PaymentStatus,
)
from settlement_kernel.domain.values import Money

TODAY = date(2024, 3, 31)


class TestClassify:
    """Bucket classification of a single due date."""

    def test_scenario_45_days(self):
        result = classify(TODAY - timedelta(days=45), TODAY)
        assert result.days_overdue == 45
        assert result.bucket is AgingBucket.DAYS_31_60

    @pytest.mark.parametrize("days,bucket", [
        (1, AgingBucket.DAYS_1_30),
        (30, AgingBucket.DAYS_1_30),
        (31, AgingBucket.DAYS_31_60),
        (60, AgingBucket.DAYS_31_60),
        (61, AgingBucket.DAYS_60_PLUS),
        (400, AgingBucket.DAYS_60_PLUS),
    ])
    def test_boundaries(self, days, bucket):
        result = classify(TODAY - timedelta(days=days), TODAY)
        assert result.days_overdue == days
        assert result.bucket is bucket
        assert result.is_overdue

    def test_due_today(self):
        result = classify(TODAY, TODAY)
        assert result.days_overdue == 0
        assert result.bucket is AgingBucket.DUE_TODAY

    def test_not_due(self):
        result = classify(TODAY + timedelta(days=1), TODAY)
        assert result.days_overdue == 0
        assert result.bucket is AgingBucket.NOT_DUE

    def test_no_due_date(self):
        assert classify(None, TODAY).bucket is AgingBucket.NOT_DUE

    def test_date_promoted_to_midnight(self):
        """A date due today is one (partial) day overdue by noon."""
        now = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)
        result = classify(date(2024, 3, 31), now)
        assert result.days_overdue == 1
        assert result.bucket is AgingBucket.DAYS_1_30

    def test_due_today_at_midnight(self):
        now = datetime(2024, 3, 31, 0, 0, tzinfo=timezone.utc)
        assert classify(date(2024, 3, 31), now).bucket is AgingBucket.DUE_TODAY

    def test_partial_days_round_up(self):
        due = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        now = datetime(2024, 3, 2, 10, 0, tzinfo=timezone.utc)
        assert classify(due, now).days_overdue == 2

    def test_later_the_same_day_is_due_today(self):
        due = datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)
        now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        assert classify(due, now).bucket is AgingBucket.DUE_TODAY

    def test_bad_now_type(self):
        with pytest.raises(TypeError):
            classify(TODAY, "2024-03-31")

    def test_deterministic(self):
        assert classify(date(2024, 1, 1), TODAY) == classify(date(2024, 1, 1), TODAY)


def _item(due: date | None, outstanding: str, number: str = "INV-1") -> AgingItem:
    return AgingItem(
        document_id=uuid4(),
        document_number=number,
        counterparty_id="CUS-001",
        due_date=due,
        total_amount=Money.of(outstanding),
        outstanding=Money.of(outstanding),
    )


class TestAgingReport:
    """Grouping open items into buckets."""

    def setup_method(self):
        self.builder = AgingReportBuilder()

    def test_every_bucket_present_in_order(self):
        report = self.builder.build([], TODAY)
        assert tuple(b.bucket for b in report.buckets) == BUCKET_ORDER
        assert report.total_outstanding == Money.zero()

    def test_grouping_and_totals(self):
        items = [
            _item(TODAY + timedelta(days=10), "100.00", "A"),
            _item(TODAY, "50.00", "B"),
            _item(TODAY - timedelta(days=5), "200.00", "C"),
            _item(TODAY - timedelta(days=45), "300.00", "D"),
            _item(TODAY - timedelta(days=90), "400.00", "E"),
            _item(TODAY - timedelta(days=20), "25.00", "F"),
        ]
        report = self.builder.build(items, TODAY)

        assert report.bucket(AgingBucket.NOT_DUE).amount == Money.of("100.00")
        assert report.bucket(AgingBucket.DUE_TODAY).count == 1
        one_to_thirty = report.bucket(AgingBucket.DAYS_1_30)
        assert one_to_thirty.amount == Money.of("225.00")
        assert [a.item.document_number for a in one_to_thirty.items] == ["C", "F"]
        assert report.bucket(AgingBucket.DAYS_60_PLUS).items[0].days_overdue == 90
        assert report.total_outstanding == Money.of("1075.00")
        assert report.overdue_amount == Money.of("925.00")
        assert report.item_count == 6

    def test_settled_items_skipped(self):
        report = self.builder.build([_item(TODAY, "0.00")], TODAY)
        assert report.item_count == 0


class TestSummarize:
    """Portfolio totals over documents."""

    def _bill(self, total: str, due: date, paid: str = "0.00") -> Bill:
        bill = Bill(
            id=uuid4(),
            document_number="BILL",
            counterparty_id="SUP-001",
            issue_date=date(2024, 1, 1),
            due_date=due,
            total_amount=Money.of(total),
            approval_status=ApprovalStatus.APPROVED,
        )
        if Money.of(paid).is_positive:
            bill = bill.with_payment(
                PaymentEntry(Money.of(paid), PaymentMethod.CASH, datetime(2024, 1, 2, tzinfo=timezone.utc)),
                datetime(2024, 1, 2, tzinfo=timezone.utc),
            )
        return bill

    def test_summary(self):
        documents = [
            self._bill("1000.00", date(2024, 4, 30), paid="600.00"),
            self._bill("500.00", date(2024, 2, 1)),
            self._bill("200.00", date(2024, 2, 1), paid="200.00"),
        ]
        summary = summarize(documents, TODAY)

        assert summary.document_count == 3
        assert summary.total_amount == Money.of("1700.00")
        assert summary.total_settled == Money.of("800.00")
        assert summary.total_outstanding == Money.of("900.00")
        assert summary.total_overdue == Money.of("500.00")
        assert summary.overdue_count == 1
        assert summary.status_counts[PaymentStatus.PARTIAL] == 1
        assert summary.status_counts[PaymentStatus.OVERDUE] == 1
        assert summary.status_counts[PaymentStatus.PAID] == 1
        assert summary.status_counts[PaymentStatus.UNPAID] == 0

    def test_due_today_after_midnight_counts_as_overdue(self):
        noon = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        bill = self._bill("300.00", date(2024, 1, 1))
        summary = summarize([bill], noon)

        assert classify(bill.due_date, noon).is_overdue
        assert bill.payment_status_at(noon) is PaymentStatus.OVERDUE
        assert summary.overdue_count == 1
        assert summary.status_counts[PaymentStatus.OVERDUE] == 1
        assert summary.status_counts[PaymentStatus.UNPAID] == 0
