"""Tests for document total computation from line items."""

from decimal import Decimal

from settlement_engines.totals import compute_totals
from settlement_kernel.domain.documents import LineItem, TaxComponent
from settlement_kernel.domain.values import Money
from settlement_kernel.exceptions import ValidationError


def _line(quantity: str, rate: str, discount: str = "0.00", taxes: tuple = ()) -> LineItem:
    return LineItem(
        description="Item",
        quantity=Decimal(quantity),
        unit_rate=Money.of(rate),
        discount=Money.of(discount),
        tax_components=taxes,
    )


class TestComputeTotals:
    """total = subtotal + tax - document discount - line discounts."""

    def test_simple_sum(self):
        totals = compute_totals([_line("2", "100.00"), _line("1", "50.00")]).unwrap()
        assert totals.subtotal == Money.of("250.00")
        assert totals.total_amount == Money.of("250.00")

    def test_taxes_and_discounts(self):
        taxable = Money.of("1000.00")
        line = _line(
            "10", "100.00", discount="50.00",
            taxes=(
                TaxComponent.for_rate("cgst", Decimal("9"), taxable),
                TaxComponent.for_rate("sgst", Decimal("9"), taxable),
            ),
        )
        totals = compute_totals([line], Money.of("30.00")).unwrap()

        assert totals.subtotal == Money.of("1000.00")
        assert totals.tax_amount == Money.of("180.00")
        assert totals.line_discounts == Money.of("50.00")
        assert totals.document_discount == Money.of("30.00")
        assert totals.total_amount == Money.of("1100.00")

    def test_lines_rounded_before_summing(self):
        totals = compute_totals([_line("1", "0.01"), _line("0.5", "0.01"), _line("0.5", "0.01")]).unwrap()
        # 0.005 rounds half-up to 0.01 on each half line
        assert totals.subtotal == Money.of("0.03")

    def test_empty_document(self):
        totals = compute_totals([]).unwrap()
        assert totals.total_amount == Money.zero()

    def test_discount_exceeding_total_rejected(self):
        outcome = compute_totals([_line("1", "10.00")], Money.of("10.01"))
        assert isinstance(outcome.error, ValidationError)

    def test_negative_document_discount_rejected(self):
        outcome = compute_totals([_line("1", "10.00")], Money.of("-1.00"))
        assert isinstance(outcome.error, ValidationError)
