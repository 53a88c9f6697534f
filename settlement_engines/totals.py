"""
Module: settlement_engines.totals
Responsibility:
    Recompute a document's monetary totals from its line items.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``total_amount = subtotal + tax_amount - document_discount - line_discounts``.
    - Each line's gross amount is rounded half-up to cents before summing,
      so the subtotal always equals the sum of the displayed line amounts.
    - Totals are never accepted from callers; they are always recomputed.

Failure modes (returned inside ``Outcome``):
    - ValidationError when the total would be negative.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.documents import LineItem
from settlement_kernel.domain.outcome import Outcome
from settlement_kernel.domain.values import Money, sum_money
from settlement_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Money
    tax_amount: Money
    line_discounts: Money
    document_discount: Money
    total_amount: Money


@traced_engine("totals", "1.0", fingerprint_fields=("line_items", "document_discount"))
def compute_totals(
    line_items: Sequence[LineItem],
    document_discount: Money | None = None,
) -> Outcome[DocumentTotals]:
    """Sum line items into document totals."""
    discount = document_discount if document_discount is not None else Money.zero()
    if discount.is_negative:
        return Outcome.fail(ValidationError(
            "Document discount cannot be negative", field="document_discount",
        ))

    subtotal = sum_money(line.gross_amount for line in line_items)
    tax_amount = sum_money(line.tax_amount for line in line_items)
    line_discounts = sum_money(line.discount for line in line_items)
    total = subtotal + tax_amount - discount - line_discounts

    if total.is_negative:
        return Outcome.fail(ValidationError(
            f"Discounts ({discount + line_discounts}) exceed subtotal plus tax "
            f"({subtotal + tax_amount})",
            field="document_discount",
        ))

    return Outcome.ok(DocumentTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        line_discounts=line_discounts,
        document_discount=discount,
        total_amount=total,
    ))
