"""
Module: settlement_engines.aging
Responsibility:
    Classify a document's due date into one of five aging buckets, and
    build aging reports and settlement summaries over many documents.
    One implementation serves payables and receivables alike.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    "Now" is always passed in; the classifier never reads a clock.

Invariants enforced:
    - ``days_overdue`` is 0 unless the due date has passed.
    - Deterministic bucket classification for identical inputs.
    - Decimal-only arithmetic for report amounts.

Failure modes:
    - TypeError when ``now`` or ``due_date`` is neither a ``date`` nor a
      ``datetime``, or when two datetimes disagree on being timezone-aware.

Usage:
    from settlement_engines.aging import classify, AgingBucket
    from datetime import date

    result = classify(due_date=date(2024, 1, 1), now=date(2024, 2, 15))
    # AgingClassification(days_overdue=45, bucket=AgingBucket.DAYS_31_60)
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from uuid import UUID

from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.clock import align_moments
from settlement_kernel.domain.documents import FinancialDocument, PaymentStatus
from settlement_kernel.domain.values import Money, sum_money
from settlement_kernel.logging_config import get_logger

logger = get_logger("engines.aging")

_ONE_DAY_SECONDS = 86400


class AgingBucket(str, Enum):
    """The five aging buckets, valued by their display labels."""

    NOT_DUE = "Not Due"
    DUE_TODAY = "Due Today"
    DAYS_1_30 = "1-30 Days"
    DAYS_31_60 = "31-60 Days"
    DAYS_60_PLUS = "60+ Days"


BUCKET_ORDER: tuple[AgingBucket, ...] = tuple(AgingBucket)


@dataclass(frozen=True)
class AgingClassification:
    """Result of ``classify``."""

    days_overdue: int
    bucket: AgingBucket

    @property
    def is_overdue(self) -> bool:
        return self.days_overdue > 0


def _bucket_for_days(days_overdue: int) -> AgingBucket:
    if days_overdue <= 30:
        return AgingBucket.DAYS_1_30
    if days_overdue <= 60:
        return AgingBucket.DAYS_31_60
    return AgingBucket.DAYS_60_PLUS


@traced_engine("aging", "1.0", fingerprint_fields=("due_date", "now"))
def classify(due_date: date | datetime | None, now: date | datetime) -> AgingClassification:
    """
    Map a due date and "now" to ``(days_overdue, bucket)``.

    - No due date: ``(0, Not Due)``.
    - ``now <= due_date`` on the same calendar day: ``(0, Due Today)``.
    - ``now <= due_date`` on an earlier day: ``(0, Not Due)``.
    - ``now > due_date``: ``days_overdue = ceil((now - due_date) / 1 day)``,
      bucketed as ``1-30``, ``31-60`` or ``60+``.

    Two plain dates compare by whole days.  A date compared with a datetime
    is promoted to midnight in the datetime's timezone.
    """
    if not isinstance(now, date):
        raise TypeError(f"now must be a date or datetime, got {type(now).__name__}")
    if due_date is None:
        return AgingClassification(days_overdue=0, bucket=AgingBucket.NOT_DUE)
    if not isinstance(due_date, date):
        raise TypeError(f"due_date must be a date or datetime, got {type(due_date).__name__}")

    due, current = align_moments(due_date, now)

    if current <= due:
        same_day = _calendar_day(current) == _calendar_day(due)
        return AgingClassification(
            days_overdue=0,
            bucket=AgingBucket.DUE_TODAY if same_day else AgingBucket.NOT_DUE,
        )

    delta: timedelta = current - due
    days_overdue = math.ceil(delta.total_seconds() / _ONE_DAY_SECONDS)
    return AgingClassification(
        days_overdue=days_overdue,
        bucket=_bucket_for_days(days_overdue),
    )


def _calendar_day(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


# -----------------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class AgingItem:
    """One open document as seen by the aging report."""

    document_id: UUID
    document_number: str
    counterparty_id: str
    due_date: date | None
    total_amount: Money
    outstanding: Money

    @classmethod
    def from_document(cls, document: FinancialDocument) -> AgingItem:
        return cls(
            document_id=document.id,
            document_number=document.document_number,
            counterparty_id=document.counterparty_id,
            due_date=document.due_date,
            total_amount=document.total_amount,
            outstanding=document.outstanding_amount,
        )


@dataclass(frozen=True)
class AgedItem:
    """An ``AgingItem`` together with its classification."""

    item: AgingItem
    classification: AgingClassification

    @property
    def days_overdue(self) -> int:
        return self.classification.days_overdue


@dataclass(frozen=True)
class BucketSummary:
    bucket: AgingBucket
    count: int
    amount: Money
    items: tuple[AgedItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AgingReport:
    """
    Snapshot aging report.

    Guarantees:
        - Every bucket is present, in display order, even when empty.
        - ``total_outstanding`` equals the sum of bucket amounts.
    """

    as_of: date | datetime
    buckets: tuple[BucketSummary, ...]

    def bucket(self, bucket: AgingBucket) -> BucketSummary:
        for summary in self.buckets:
            if summary.bucket is bucket:
                return summary
        raise KeyError(bucket)

    @property
    def total_outstanding(self) -> Money:
        return sum_money(b.amount for b in self.buckets)

    @property
    def item_count(self) -> int:
        return sum(b.count for b in self.buckets)

    @property
    def overdue_amount(self) -> Money:
        return sum_money(
            b.amount for b in self.buckets
            if b.bucket not in (AgingBucket.NOT_DUE, AgingBucket.DUE_TODAY)
        )


class AgingReportBuilder:
    """
    Group open documents into the five aging buckets.

    Contract:
        Pure; items with nothing outstanding are skipped.  Within a bucket,
        items keep their input order.
    """

    @traced_engine("aging_report", "1.0", fingerprint_fields=("now",))
    def build(self, items: Sequence[AgingItem], now: date | datetime) -> AgingReport:
        grouped: dict[AgingBucket, list[AgedItem]] = {b: [] for b in BUCKET_ORDER}
        for item in items:
            if not item.outstanding.is_positive:
                continue
            classification = classify(item.due_date, now)
            grouped[classification.bucket].append(AgedItem(item, classification))

        buckets = tuple(
            BucketSummary(
                bucket=bucket,
                count=len(aged),
                amount=sum_money(a.item.outstanding for a in aged),
                items=tuple(aged),
            )
            for bucket, aged in grouped.items()
        )
        report = AgingReport(as_of=now, buckets=buckets)

        logger.info("aging_report_built", extra={
            "item_count": report.item_count,
            "total_outstanding": str(report.total_outstanding),
            "overdue_amount": str(report.overdue_amount),
        })
        return report


@dataclass(frozen=True)
class SettlementSummary:
    """Portfolio totals and per-status counts for a set of documents."""

    document_count: int
    total_amount: Money
    total_settled: Money
    total_outstanding: Money
    total_overdue: Money
    overdue_count: int
    status_counts: dict[PaymentStatus, int]


def summarize(documents: Sequence[FinancialDocument], now: date | datetime) -> SettlementSummary:
    """Totals, overdue exposure and status counts as of ``now``."""
    status_counts = {status: 0 for status in PaymentStatus}
    total_amount = Money.zero()
    total_settled = Money.zero()
    total_outstanding = Money.zero()
    total_overdue = Money.zero()
    overdue_count = 0

    for document in documents:
        outstanding = document.outstanding_amount
        total_amount = total_amount + document.total_amount
        total_settled = total_settled + document.settled_amount
        total_outstanding = total_outstanding + outstanding
        status_counts[document.payment_status_at(now)] += 1
        if outstanding.is_positive and classify(document.due_date, now).is_overdue:
            overdue_count += 1
            total_overdue = total_overdue + outstanding

    return SettlementSummary(
        document_count=len(documents),
        total_amount=total_amount,
        total_settled=total_settled,
        total_outstanding=total_outstanding,
        total_overdue=total_overdue,
        overdue_count=overdue_count,
        status_counts=status_counts,
    )
