"""
Financial document domain models (``settlement_kernel.domain.documents``).

Responsibility
--------------
Frozen value objects for the documents money is settled against: the
generic ``FinancialDocument`` and its variants ``Bill`` (payable),
``SalesInvoice`` (receivable) and ``CreditNote``, together with their line
items, tax components, payment entries and audit entries.

Architecture position
---------------------
**Kernel domain layer** -- pure data definitions.  No I/O.  The settlement
service loads a document, derives a new snapshot with the ``with_*`` helpers
and hands it to the repository.

Invariants enforced
-------------------
* Every monetary field is ``Money`` (two-place ``Decimal``).
* ``outstanding_amount = total_amount - paid_amount - credit_applied`` is
  never negative; ``with_payment`` refuses any entry that would make it so.
* ``payments`` and ``audit_log`` only ever grow: every helper returns a new
  snapshot with the previous entries as a prefix.
* ``is_locked`` never goes back to ``False`` once set.

Failure modes
-------------
* ``ValidationError`` from ``__post_init__`` on negative quantities, rates,
  discounts or out-of-range tax rates.
* ``OverAllocationError`` from ``with_payment`` when an entry exceeds the
  outstanding amount.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Iterable, Mapping
from uuid import UUID

from settlement_kernel.domain.clock import is_past_due
from settlement_kernel.domain.values import Money, sum_money
from settlement_kernel.domain.workflow import (
    APPROVED,
    CANCELLED,
    PAID,
    PARTIAL,
)
from settlement_kernel.exceptions import OverAllocationError, ValidationError


class DocumentKind(Enum):
    """Concrete document variants sharing the settlement rules."""
    BILL = "bill"
    SALES_INVOICE = "sales_invoice"
    CREDIT_NOTE = "credit_note"


class Direction(Enum):
    """Which way money moves when the document is settled."""
    OUTFLOW = "outflow"   # business pays the counterparty
    INFLOW = "inflow"     # counterparty pays the business
    CREDIT = "credit"     # no funds move; counterparty credit is issued


class ApprovalStatus(Enum):
    """Approval lifecycle.  Independent of ``PaymentStatus``."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PaymentStatus(Enum):
    """Derived settlement status, see ``derive_payment_status``."""
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class PaymentSource(Enum):
    """Where the money in a payment entry came from."""
    DIRECT_PAYMENT = "direct_payment"
    CREDIT_CONSUMPTION = "credit_consumption"
    CREDIT_ISSUANCE = "credit_issuance"


class PaymentMethod(Enum):
    CASH = "cash"
    BANK = "bank"
    UPI = "upi"
    CARD = "card"
    CHEQUE = "cheque"
    CREDIT_NOTE = "credit_note"
    OWNER = "owner"


class AuditAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAYMENT_RECORDED = "payment_recorded"
    CREDIT_APPLIED = "credit_applied"
    CREDIT_ISSUED = "credit_issued"
    PAYMENT_REJECTED = "payment_rejected"
    LOCKED = "locked"
    CANCELLED = "cancelled"
    RESUBMITTED = "resubmitted"
    DELETED = "deleted"


@dataclass(frozen=True)
class TaxComponent:
    """A flat-percentage tax on a line (e.g. ``cgst``, ``sgst``, ``igst``, ``vat``)."""
    kind: str
    rate: Decimal
    amount: Money

    def __post_init__(self):
        if not self.kind:
            raise ValidationError("Tax component kind is required", field="kind")
        if isinstance(self.rate, float):
            raise TypeError("Tax rate must be Decimal, not float")
        if not Decimal("0") <= self.rate <= Decimal("100"):
            raise ValidationError(
                f"Tax rate must be between 0 and 100, got {self.rate}", field="rate",
            )
        if self.amount.is_negative:
            raise ValidationError("Tax amount cannot be negative", field="amount")

    @classmethod
    def for_rate(cls, kind: str, rate: Decimal, taxable: Money) -> TaxComponent:
        """Derive the amount as ``taxable * rate / 100``, rounded half-up."""
        return cls(
            kind=kind,
            rate=rate,
            amount=Money.rounded(taxable.amount * rate / Decimal("100")),
        )


@dataclass(frozen=True)
class LineItem:
    """One line of a document.  ``quantity >= 0``, ``unit_rate >= 0``."""
    description: str
    quantity: Decimal
    unit_rate: Money
    discount: Money = field(default_factory=Money.zero)
    tax_components: tuple[TaxComponent, ...] = ()

    def __post_init__(self):
        if isinstance(self.quantity, float):
            raise TypeError("Quantity must be Decimal, not float")
        if not isinstance(self.quantity, Decimal):
            object.__setattr__(self, "quantity", Decimal(self.quantity))
        if self.quantity < 0:
            raise ValidationError("Quantity cannot be negative", field="quantity")
        if self.unit_rate.is_negative:
            raise ValidationError("Unit rate cannot be negative", field="unit_rate")
        if self.discount.is_negative:
            raise ValidationError("Line discount cannot be negative", field="discount")
        object.__setattr__(self, "tax_components", tuple(self.tax_components))

    @property
    def gross_amount(self) -> Money:
        """``quantity * unit_rate`` rounded to cents."""
        return Money.rounded(self.quantity * self.unit_rate.amount)

    @property
    def tax_amount(self) -> Money:
        return sum_money(t.amount for t in self.tax_components)


@dataclass(frozen=True)
class PaymentEntry:
    """One append-only entry of a document's ``payments`` trail."""
    amount: Money
    method: PaymentMethod
    recorded_at: datetime
    source: PaymentSource = PaymentSource.DIRECT_PAYMENT
    funding_source_id: UUID | None = None
    reference: str | None = None
    settlement_id: UUID | None = None

    def __post_init__(self):
        if not self.amount.is_positive:
            raise ValidationError("Payment entry amount must be positive", field="amount")


@dataclass(frozen=True)
class AuditEntry:
    """One append-only entry of a document's audit log."""
    action: AuditAction
    actor: str
    timestamp: datetime
    details: Mapping[str, Any] = field(default_factory=dict)


def derive_payment_status(
    total_amount: Money,
    paid_amount: Money,
    credit_applied: Money,
    due_date: date | None,
    now: datetime | date,
) -> PaymentStatus:
    """
    Derive the payment status from amounts and the due date.

    ``paid`` iff nothing is outstanding; ``overdue`` iff something is
    outstanding and ``now`` is later than the due date (this wins over
    ``partial``); otherwise ``partial`` when anything was applied, else
    ``unpaid``.  A plain due date compared with a datetime counts from
    midnight, the same rule the aging classifier applies.
    """
    outstanding = total_amount - paid_amount - credit_applied
    if outstanding.is_zero:
        return PaymentStatus.PAID
    if is_past_due(due_date, now):
        return PaymentStatus.OVERDUE
    if (paid_amount + credit_applied).is_positive:
        return PaymentStatus.PARTIAL
    return PaymentStatus.UNPAID


@dataclass(frozen=True)
class FinancialDocument:
    """
    Generic payable/receivable document.

    Contract: frozen; variants fix ``KIND``, ``DIRECTION`` and
    ``COUNTERPARTY_ROLE`` as class attributes.  Totals are computed by
    ``settlement_engines.totals`` and never accepted from callers.
    Guarantees: ``outstanding_amount >= 0``.
    Non-goals: no currency, no ledger postings.
    """
    KIND: ClassVar[DocumentKind]
    DIRECTION: ClassVar[Direction]
    COUNTERPARTY_ROLE: ClassVar[str]

    id: UUID
    document_number: str
    counterparty_id: str
    issue_date: date
    due_date: date | None = None
    line_items: tuple[LineItem, ...] = ()
    subtotal: Money = field(default_factory=Money.zero)
    tax_amount: Money = field(default_factory=Money.zero)
    line_discounts: Money = field(default_factory=Money.zero)
    document_discount: Money = field(default_factory=Money.zero)
    total_amount: Money = field(default_factory=Money.zero)
    paid_amount: Money = field(default_factory=Money.zero)
    credit_applied: Money = field(default_factory=Money.zero)
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    is_locked: bool = False
    is_deleted: bool = False
    payments: tuple[PaymentEntry, ...] = ()
    audit_log: tuple[AuditEntry, ...] = ()
    version: int = 1
    notes: str | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    resubmitted_from: UUID | None = None

    def __post_init__(self):
        if type(self) is FinancialDocument:
            raise TypeError("FinancialDocument is abstract; use Bill, SalesInvoice or CreditNote")
        if self.outstanding_amount.is_negative:
            raise OverAllocationError(
                f"Document {self.document_number} would have negative outstanding "
                f"{self.outstanding_amount}",
                document_id=self.id,
                requested=self.paid_amount + self.credit_applied,
                limit=self.total_amount,
            )
        if self.document_discount.is_negative:
            raise ValidationError("Document discount cannot be negative", field="document_discount")

    @property
    def kind(self) -> DocumentKind:
        return self.KIND

    @property
    def direction(self) -> Direction:
        return self.DIRECTION

    @property
    def outstanding_amount(self) -> Money:
        return self.total_amount - self.paid_amount - self.credit_applied

    @property
    def settled_amount(self) -> Money:
        return self.paid_amount + self.credit_applied

    @property
    def has_payments(self) -> bool:
        return bool(self.payments)

    @property
    def settlement_state(self) -> str:
        """Position in ``SETTLEMENT_WORKFLOW``.

        Approved documents split into ``approved`` / ``partial`` / ``paid``
        by how much has been settled.
        """
        if self.approval_status is ApprovalStatus.CANCELLED:
            return CANCELLED
        if self.approval_status is not ApprovalStatus.APPROVED:
            return self.approval_status.value
        if self.outstanding_amount.is_zero:
            return PAID
        if self.settled_amount.is_positive:
            return PARTIAL
        return APPROVED

    def payment_status_at(self, now: datetime | date) -> PaymentStatus:
        return derive_payment_status(
            self.total_amount, self.paid_amount, self.credit_applied, self.due_date, now,
        )

    def as_of(self, now: datetime | date) -> FinancialDocument:
        """This snapshot with ``payment_status`` derived at ``now``."""
        status = self.payment_status_at(now)
        if status is self.payment_status:
            return self
        return replace(self, payment_status=status)

    def with_audit(
        self,
        action: AuditAction,
        actor: str,
        timestamp: datetime,
        **details: Any,
    ) -> FinancialDocument:
        entry = AuditEntry(action=action, actor=actor, timestamp=timestamp, details=details)
        return replace(self, audit_log=self.audit_log + (entry,))

    def with_payment(self, entry: PaymentEntry, now: datetime) -> FinancialDocument:
        """Append a payment entry, re-derive amounts and status, and lock."""
        if entry.amount > self.outstanding_amount:
            raise OverAllocationError(
                f"Payment of {entry.amount} exceeds outstanding {self.outstanding_amount} "
                f"on {self.document_number}",
                document_id=self.id,
                requested=entry.amount,
                limit=self.outstanding_amount,
            )
        paid, credit = _apply_entry(self.paid_amount, self.credit_applied, entry)
        return replace(
            self,
            payments=self.payments + (entry,),
            paid_amount=paid,
            credit_applied=credit,
            payment_status=derive_payment_status(
                self.total_amount, paid, credit, self.due_date, now,
            ),
            is_locked=True,
        )


@dataclass(frozen=True)
class Bill(FinancialDocument):
    """Payable: money the business owes a supplier."""
    KIND: ClassVar[DocumentKind] = DocumentKind.BILL
    DIRECTION: ClassVar[Direction] = Direction.OUTFLOW
    COUNTERPARTY_ROLE: ClassVar[str] = "supplier"


@dataclass(frozen=True)
class SalesInvoice(FinancialDocument):
    """Receivable: money a customer owes the business."""
    KIND: ClassVar[DocumentKind] = DocumentKind.SALES_INVOICE
    DIRECTION: ClassVar[Direction] = Direction.INFLOW
    COUNTERPARTY_ROLE: ClassVar[str] = "customer"


@dataclass(frozen=True)
class CreditNote(FinancialDocument):
    """Return or allowance.  Approval issues its total as counterparty credit."""
    KIND: ClassVar[DocumentKind] = DocumentKind.CREDIT_NOTE
    DIRECTION: ClassVar[Direction] = Direction.CREDIT
    COUNTERPARTY_ROLE: ClassVar[str] = "counterparty"


DOCUMENT_CLASSES: dict[DocumentKind, type[FinancialDocument]] = {
    DocumentKind.BILL: Bill,
    DocumentKind.SALES_INVOICE: SalesInvoice,
    DocumentKind.CREDIT_NOTE: CreditNote,
}


def document_class(kind: DocumentKind | str) -> type[FinancialDocument]:
    """Return the variant class for ``kind``."""
    try:
        return DOCUMENT_CLASSES[DocumentKind(kind)]
    except ValueError as e:
        raise ValidationError(f"Unknown document kind: {kind!r}", field="kind") from e


def _apply_entry(
    paid: Money, credit: Money, entry: PaymentEntry,
) -> tuple[Money, Money]:
    if entry.source is PaymentSource.DIRECT_PAYMENT:
        return paid + entry.amount, credit
    return paid, credit + entry.amount


@dataclass(frozen=True)
class ReplayResult:
    paid_amount: Money
    credit_applied: Money
    payment_status: PaymentStatus


def replay_payments(
    document: FinancialDocument,
    as_of: datetime | date,
    payments: Iterable[PaymentEntry] | None = None,
) -> ReplayResult:
    """
    Rebuild paid/credit amounts and status from the payment trail.

    Starts from the document's initial state (nothing applied) and folds
    every entry in order.  Deterministic: the same trail always yields the
    same result, which must equal the stored fields.
    """
    paid = Money.zero()
    credit = Money.zero()
    for entry in document.payments if payments is None else payments:
        paid, credit = _apply_entry(paid, credit, entry)
    return ReplayResult(
        paid_amount=paid,
        credit_applied=credit,
        payment_status=derive_payment_status(
            document.total_amount, paid, credit, document.due_date, as_of,
        ),
    )
