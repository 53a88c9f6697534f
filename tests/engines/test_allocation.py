"""
Tests for the Allocation Calculator.

Covers:
- Default rule: single candidate gets min(amount, outstanding)
- Default rule: zero or several candidates -> everything is excess
- Explicit allocations, including the credit top-up
- All-or-nothing rejection of bad explicit allocations
- Conservation of money in every successful result
"""

from uuid import uuid4

import pytest

from settlement_engines.allocation import (
    AllocationCalculator,
    AllocationCandidate,
    PaymentIntent,
)
from settlement_kernel.domain.documents import PaymentSource
from settlement_kernel.domain.funding import ExplicitAllocation
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import OverAllocationError, ValidationError


def _assert_conserved(result, payment_amount: Money) -> None:
    assert result.total_applied + result.excess_amount == payment_amount + result.credit_consumed
    assert result.direct_applied + result.excess_amount == payment_amount


class TestDefaultAllocation:
    """No explicit allocations."""

    def setup_method(self):
        self.calculator = AllocationCalculator()
        self.doc = uuid4()

    def test_single_candidate_partial(self):
        result = self.calculator.allocate(
            PaymentIntent(Money.of("600.00")),
            [AllocationCandidate(self.doc, Money.of("1000.00"))],
        ).unwrap()
        assert len(result.records) == 1
        assert result.records[0].applied_amount == Money.of("600.00")
        assert result.records[0].source is PaymentSource.DIRECT_PAYMENT
        assert result.excess_amount == Money.zero()
        _assert_conserved(result, Money.of("600.00"))

    def test_single_candidate_overpayment(self):
        result = self.calculator.allocate(
            PaymentIntent(Money.of("1200.00")),
            [AllocationCandidate(self.doc, Money.of("1000.00"))],
        ).unwrap()
        assert result.applied_to(self.doc) == Money.of("1000.00")
        assert result.excess_amount == Money.of("200.00")
        _assert_conserved(result, Money.of("1200.00"))

    def test_scenario_two_candidates_become_credit(self):
        """700 against invoices of 300 and 500 with no explicit split is all credit."""
        result = self.calculator.allocate(
            PaymentIntent(Money.of("700.00")),
            [
                AllocationCandidate(uuid4(), Money.of("300.00")),
                AllocationCandidate(uuid4(), Money.of("500.00")),
            ],
        ).unwrap()
        assert result.records == ()
        assert result.excess_amount == Money.of("700.00")
        assert result.direct_applied == Money.zero()

    def test_no_candidates_is_advance(self):
        result = self.calculator.allocate(PaymentIntent(Money.of("50.00")), []).unwrap()
        assert result.records == ()
        assert result.excess_amount == Money.of("50.00")

    def test_default_never_consumes_credit(self):
        result = self.calculator.allocate(
            PaymentIntent(Money.of("100.00")),
            [AllocationCandidate(self.doc, Money.of("500.00"))],
            existing_credit=Money.of("400.00"),
        ).unwrap()
        assert result.credit_consumed == Money.zero()
        assert result.applied_to(self.doc) == Money.of("100.00")

    def test_zero_payment(self):
        result = self.calculator.allocate(
            PaymentIntent(Money.zero()),
            [AllocationCandidate(self.doc, Money.of("500.00"))],
        ).unwrap()
        assert result.records == ()
        assert result.excess_amount == Money.zero()

    def test_negative_payment_rejected(self):
        outcome = self.calculator.allocate(
            PaymentIntent(Money.of("-1.00")),
            [AllocationCandidate(self.doc, Money.of("500.00"))],
        )
        assert isinstance(outcome.error, ValidationError)


class TestExplicitAllocation:
    """Explicit per-document requests."""

    def setup_method(self):
        self.calculator = AllocationCalculator()
        self.inv1 = uuid4()
        self.inv2 = uuid4()
        self.candidates = [
            AllocationCandidate(self.inv1, Money.of("300.00")),
            AllocationCandidate(self.inv2, Money.of("500.00")),
        ]

    def _intent(self, amount: str, *pairs) -> PaymentIntent:
        return PaymentIntent(
            Money.of(amount),
            tuple(ExplicitAllocation(doc, Money.of(value)) for doc, value in pairs),
        )

    def test_scenario_explicit_split(self):
        """{inv1: 300, inv2: 400} from 700 leaves no credit and 100 on inv2."""
        result = self.calculator.allocate(
            self._intent("700.00", (self.inv1, "300.00"), (self.inv2, "400.00")),
            self.candidates,
        ).unwrap()
        assert result.applied_to(self.inv1) == Money.of("300.00")
        assert result.applied_to(self.inv2) == Money.of("400.00")
        assert result.excess_amount == Money.zero()
        assert result.credit_consumed == Money.zero()
        _assert_conserved(result, Money.of("700.00"))

    def test_partial_explicit_leaves_excess(self):
        result = self.calculator.allocate(
            self._intent("700.00", (self.inv1, "300.00")),
            self.candidates,
        ).unwrap()
        assert result.excess_amount == Money.of("400.00")
        assert result.document_ids == (self.inv1,)

    def test_credit_tops_up_direct_money(self):
        """Direct money is used first; the rest of the request comes from credit."""
        result = self.calculator.allocate(
            self._intent("500.00", (self.inv1, "300.00"), (self.inv2, "500.00")),
            self.candidates,
            existing_credit=Money.of("350.00"),
        ).unwrap()
        assert result.credit_consumed == Money.of("300.00")
        inv2_records = [r for r in result.records if r.document_id == self.inv2]
        assert [(r.source, r.applied_amount) for r in inv2_records] == [
            (PaymentSource.DIRECT_PAYMENT, Money.of("200.00")),
            (PaymentSource.CREDIT_CONSUMPTION, Money.of("300.00")),
        ]
        assert result.excess_amount == Money.zero()
        _assert_conserved(result, Money.of("500.00"))

    def test_credit_only_allocation(self):
        result = self.calculator.allocate(
            self._intent("0.00", (self.inv1, "100.00")),
            self.candidates,
            existing_credit=Money.of("100.00"),
        ).unwrap()
        assert result.credit_consumed == Money.of("100.00")
        assert result.direct_applied == Money.zero()

    def test_exceeds_outstanding(self):
        outcome = self.calculator.allocate(
            self._intent("700.00", (self.inv1, "300.01")),
            self.candidates,
        )
        assert isinstance(outcome.error, OverAllocationError)
        assert outcome.error.limit == Money.of("300.00")

    def test_exceeds_payment_plus_credit(self):
        outcome = self.calculator.allocate(
            self._intent("300.00", (self.inv1, "300.00"), (self.inv2, "100.00")),
            self.candidates,
            existing_credit=Money.of("99.99"),
        )
        assert isinstance(outcome.error, OverAllocationError)
        assert outcome.error.requested == Money.of("400.00")
        assert outcome.error.limit == Money.of("399.99")

    @pytest.mark.parametrize("value", ["0.00", "-5.00"])
    def test_non_positive_allocation(self, value):
        outcome = self.calculator.allocate(
            self._intent("100.00", (self.inv1, value)),
            self.candidates,
        )
        assert isinstance(outcome.error, ValidationError)

    def test_unknown_document(self):
        outcome = self.calculator.allocate(
            self._intent("100.00", (uuid4(), "50.00")),
            self.candidates,
        )
        assert isinstance(outcome.error, ValidationError)

    def test_duplicate_document(self):
        outcome = self.calculator.allocate(
            self._intent("100.00", (self.inv1, "50.00"), (self.inv1, "50.00")),
            self.candidates,
        )
        assert isinstance(outcome.error, ValidationError)

    def test_one_bad_allocation_rejects_all(self):
        outcome = self.calculator.allocate(
            self._intent("800.00", (self.inv1, "300.00"), (self.inv2, "501.00")),
            self.candidates,
        )
        assert not outcome.is_success
        assert outcome.value is None


class TestAllocationTracing:
    """The calculator is wrapped by the engine tracer."""

    def test_trace_emitted(self, captured_logs):
        AllocationCalculator().allocate(PaymentIntent(Money.of("1.00")), [])
        traces = [r for r in captured_logs() if r["message"] == "SETTLEMENT_ENGINE_TRACE"]
        assert traces and traces[-1]["engine_name"] == "allocation"
