"""
Module: settlement_engines.allocation
Responsibility:
    Distribute a payment (plus, optionally, existing counterparty credit)
    across outstanding documents, and compute the excess that becomes new
    credit.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import settlement_kernel domain values and errors.

Invariants enforced:
    - Conservation: sum(records) + excess_amount == payment.amount + credit_consumed.
    - No record exceeds its document's outstanding amount.
    - Credit is consumed only after the direct payment amount is exhausted,
      and never beyond ``existing_credit``.
    - All-or-nothing: one bad explicit allocation rejects the whole request.
    - Decimal-only arithmetic through ``Money``; no clock access.

Failure modes (returned inside ``Outcome``, never raised):
    - ValidationError for negative amounts, non-positive explicit
      allocations, unknown or duplicated document ids.
    - OverAllocationError when an explicit allocation exceeds its document's
      outstanding, or their sum exceeds payment + existing credit.

Usage:
    from settlement_engines.allocation import (
        AllocationCalculator, AllocationCandidate, PaymentIntent,
    )

    outcome = AllocationCalculator().allocate(
        payment=PaymentIntent(amount=Money.of("700.00")),
        candidates=[
            AllocationCandidate(document_id=inv1, outstanding=Money.of("300.00")),
            AllocationCandidate(document_id=inv2, outstanding=Money.of("500.00")),
        ],
        existing_credit=Money.zero(),
    )
    # two candidates, no explicit allocations -> 700.00 excess
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from uuid import UUID

from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.documents import PaymentSource
from settlement_kernel.domain.funding import ExplicitAllocation
from settlement_kernel.domain.outcome import Outcome
from settlement_kernel.domain.values import Money, sum_money
from settlement_kernel.exceptions import OverAllocationError, ValidationError
from settlement_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


@dataclass(frozen=True)
class AllocationCandidate:
    """An open document that may receive part of a payment."""

    document_id: UUID
    outstanding: Money


@dataclass(frozen=True)
class PaymentIntent:
    """The amount being settled plus optional explicit per-document requests."""

    amount: Money
    explicit_allocations: tuple[ExplicitAllocation, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "explicit_allocations", tuple(self.explicit_allocations))


@dataclass(frozen=True)
class AllocationRecord:
    """
    Amount applied to one document from one source.

    Contract:
        Immutable once created; persisted alongside the payment event.
    Guarantees:
        - ``applied_amount`` is positive.
        - ``source`` is ``DIRECT_PAYMENT`` or ``CREDIT_CONSUMPTION``.
    """

    document_id: UUID
    applied_amount: Money
    source: PaymentSource


@dataclass(frozen=True)
class AllocationResult:
    """
    Complete allocation result.

    Guarantees:
        - ``total_applied + excess_amount == payment.amount + credit_consumed``.
        - ``direct_applied + excess_amount == payment.amount``.
    """

    records: tuple[AllocationRecord, ...]
    excess_amount: Money
    credit_consumed: Money
    direct_applied: Money

    @property
    def total_applied(self) -> Money:
        return sum_money(r.applied_amount for r in self.records)

    def applied_to(self, document_id: UUID) -> Money:
        """Total applied to one document across both sources."""
        return sum_money(
            r.applied_amount for r in self.records if r.document_id == document_id
        )

    @property
    def document_ids(self) -> tuple[UUID, ...]:
        """Documents receiving money, in first-record order."""
        seen: list[UUID] = []
        for r in self.records:
            if r.document_id not in seen:
                seen.append(r.document_id)
        return tuple(seen)


class AllocationCalculator:
    """
    Compute how a payment is applied to outstanding documents.

    Contract:
        Pure function of its arguments.  No I/O, no database access.
    Guarantees:
        - With explicit allocations, direct money is consumed in request
          order; the remainder of each allocation is taken from credit.
          A single allocation may therefore yield two records.
        - Without explicit allocations and exactly one candidate,
          ``min(amount, outstanding)`` is applied to it.
        - Without explicit allocations and zero or several candidates,
          nothing is applied: the whole amount is excess.
    Non-goals:
        - Does not choose between several open documents (FIFO etc.).
        - Does not touch funding sources or the credit ledger.
    """

    @traced_engine(
        "allocation", "1.0",
        fingerprint_fields=("payment", "candidates", "existing_credit"),
    )
    def allocate(
        self,
        payment: PaymentIntent,
        candidates: Sequence[AllocationCandidate],
        existing_credit: Money | None = None,
    ) -> Outcome[AllocationResult]:
        credit = existing_credit if existing_credit is not None else Money.zero()

        if payment.amount.is_negative:
            return Outcome.fail(ValidationError(
                f"Payment amount cannot be negative: {payment.amount}", field="amount",
            ))
        if credit.is_negative:
            return Outcome.fail(ValidationError(
                f"Existing credit cannot be negative: {credit}", field="existing_credit",
            ))

        if payment.explicit_allocations:
            outcome = self._allocate_explicit(payment, candidates, credit)
        else:
            outcome = Outcome.ok(self._allocate_default(payment, candidates))

        if outcome.is_success:
            result = outcome.value
            logger.info("allocation_completed", extra={
                "amount": str(payment.amount),
                "candidate_count": len(candidates),
                "explicit": bool(payment.explicit_allocations),
                "record_count": len(result.records),
                "direct_applied": str(result.direct_applied),
                "credit_consumed": str(result.credit_consumed),
                "excess_amount": str(result.excess_amount),
            })
        else:
            logger.warning("allocation_rejected", extra={
                "amount": str(payment.amount),
                "error_code": outcome.error.code,
                "reason": str(outcome.error),
            })
        return outcome

    def _allocate_default(
        self,
        payment: PaymentIntent,
        candidates: Sequence[AllocationCandidate],
    ) -> AllocationResult:
        if len(candidates) != 1:
            return AllocationResult(
                records=(),
                excess_amount=payment.amount,
                credit_consumed=Money.zero(),
                direct_applied=Money.zero(),
            )

        candidate = candidates[0]
        outstanding = candidate.outstanding if candidate.outstanding.is_positive else Money.zero()
        applied = min(payment.amount, outstanding)
        records: tuple[AllocationRecord, ...] = ()
        if applied.is_positive:
            records = (AllocationRecord(
                document_id=candidate.document_id,
                applied_amount=applied,
                source=PaymentSource.DIRECT_PAYMENT,
            ),)
        return AllocationResult(
            records=records,
            excess_amount=payment.amount - applied,
            credit_consumed=Money.zero(),
            direct_applied=applied,
        )

    def _allocate_explicit(
        self,
        payment: PaymentIntent,
        candidates: Sequence[AllocationCandidate],
        existing_credit: Money,
    ) -> Outcome[AllocationResult]:
        outstanding_by_id = {c.document_id: c.outstanding for c in candidates}
        seen: set[UUID] = set()

        for request in payment.explicit_allocations:
            if not request.amount.is_positive:
                return Outcome.fail(ValidationError(
                    f"Allocation to {request.document_id} must be positive, got {request.amount}",
                    field="explicit_allocations",
                ))
            if request.document_id not in outstanding_by_id:
                return Outcome.fail(ValidationError(
                    f"Document {request.document_id} is not an open candidate for this payment",
                    field="explicit_allocations",
                ))
            if request.document_id in seen:
                return Outcome.fail(ValidationError(
                    f"Document {request.document_id} is allocated more than once",
                    field="explicit_allocations",
                ))
            seen.add(request.document_id)

            limit = outstanding_by_id[request.document_id]
            if request.amount > limit:
                return Outcome.fail(OverAllocationError(
                    f"Allocation of {request.amount} exceeds outstanding {limit} "
                    f"on document {request.document_id}",
                    document_id=request.document_id,
                    requested=request.amount,
                    limit=limit,
                ))

        requested_total = sum_money(a.amount for a in payment.explicit_allocations)
        available = payment.amount + existing_credit
        if requested_total > available:
            return Outcome.fail(OverAllocationError(
                f"Allocations total {requested_total} exceeds available funds {available} "
                f"(payment {payment.amount} + credit {existing_credit})",
                requested=requested_total,
                limit=available,
            ))

        records: list[AllocationRecord] = []
        direct_remaining = payment.amount
        credit_consumed = Money.zero()
        for request in payment.explicit_allocations:
            direct = min(direct_remaining, request.amount)
            if direct.is_positive:
                records.append(AllocationRecord(
                    document_id=request.document_id,
                    applied_amount=direct,
                    source=PaymentSource.DIRECT_PAYMENT,
                ))
                direct_remaining = direct_remaining - direct
            from_credit = request.amount - direct
            if from_credit.is_positive:
                records.append(AllocationRecord(
                    document_id=request.document_id,
                    applied_amount=from_credit,
                    source=PaymentSource.CREDIT_CONSUMPTION,
                ))
                credit_consumed = credit_consumed + from_credit

        return Outcome.ok(AllocationResult(
            records=tuple(records),
            excess_amount=direct_remaining,
            credit_consumed=credit_consumed,
            direct_applied=payment.amount - direct_remaining,
        ))
