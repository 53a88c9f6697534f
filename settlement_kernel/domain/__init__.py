"""
Pure domain layer.

Immutable value objects and documents with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

Time enters only through an injected ``Clock``.
"""

from settlement_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from settlement_kernel.domain.documents import (
    ApprovalStatus,
    AuditAction,
    AuditEntry,
    Bill,
    CreditNote,
    Direction,
    DocumentKind,
    FinancialDocument,
    LineItem,
    PaymentEntry,
    PaymentMethod,
    PaymentSource,
    PaymentStatus,
    ReplayResult,
    SalesInvoice,
    TaxComponent,
    derive_payment_status,
    document_class,
    replay_payments,
)
from settlement_kernel.domain.funding import (
    CreditMovement,
    CreditMovementKind,
    ExplicitAllocation,
    FundingSource,
    FundingSourceKind,
    MovementKind,
    PaymentLeg,
    PaymentRequest,
    ReservationToken,
    validate_leg_method,
)
from settlement_kernel.domain.outcome import Outcome
from settlement_kernel.domain.values import Money, sum_money
from settlement_kernel.domain.workflow import SETTLEMENT_WORKFLOW, Guard, Transition, Workflow

__all__ = [
    # Values
    "Money",
    "sum_money",
    "Outcome",
    # Time
    "Clock",
    "DeterministicClock",
    "SystemClock",
    # Documents
    "ApprovalStatus",
    "AuditAction",
    "AuditEntry",
    "Bill",
    "CreditNote",
    "Direction",
    "DocumentKind",
    "FinancialDocument",
    "LineItem",
    "PaymentEntry",
    "PaymentMethod",
    "PaymentSource",
    "PaymentStatus",
    "ReplayResult",
    "SalesInvoice",
    "TaxComponent",
    "derive_payment_status",
    "document_class",
    "replay_payments",
    # Funding
    "CreditMovement",
    "CreditMovementKind",
    "ExplicitAllocation",
    "FundingSource",
    "FundingSourceKind",
    "MovementKind",
    "PaymentLeg",
    "PaymentRequest",
    "ReservationToken",
    "validate_leg_method",
    # Workflow
    "Guard",
    "Transition",
    "Workflow",
    "SETTLEMENT_WORKFLOW",
]
